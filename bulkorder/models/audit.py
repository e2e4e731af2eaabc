"""
Audit Event Model
=================

Tamper-evident audit trail. Each row carries an HMAC-SHA256 checksum over
its own content chained to the previous row's checksum.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text

from bulkorder.models.types import UTCDateTime


class AuditEventRecord(SQLModel, table=True):
    __tablename__ = "audit_events"

    id: str = Field(primary_key=True, max_length=40)
    sequence: int = Field(index=True, unique=True)
    timestamp: datetime = Field(sa_type=UTCDateTime, index=True)
    event_type: str = Field(index=True, max_length=64)
    severity: str = Field(max_length=16)
    user_id: Optional[str] = Field(default=None, nullable=True, index=True, max_length=128)
    account_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    ip_address: Optional[str] = Field(default=None, nullable=True, max_length=64)
    user_agent: Optional[str] = Field(default=None, nullable=True, max_length=512)
    action: str = Field(max_length=128)
    resource: Optional[str] = Field(default=None, nullable=True, max_length=128)
    outcome: str = Field(max_length=16)
    details_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))
    previous_checksum: Optional[str] = Field(default=None, nullable=True, max_length=64)
    checksum: str = Field(max_length=64)

"""
Upload request envelope, built once by the router and never mutated.
"""

import hashlib
from dataclasses import dataclass, field
from functools import cached_property
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from bulkorder.auth.b2b_auth import B2BIdentity


@dataclass(frozen=True)
class ClientMetadata:
    ip_address: str
    user_agent: Optional[str] = None
    filename: str = "upload.csv"
    declared_mime: Optional[str] = None


@dataclass(frozen=True)
class BulkOrderRequest:
    content: bytes
    identity: B2BIdentity
    client: ClientMetadata
    notes: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return Path(self.client.filename).suffix.lower()

    @cached_property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    def ledger_metadata(self) -> Dict[str, Any]:
        return {
            "filename": self.client.filename,
            "file_hash": self.content_hash,
            "file_size": self.size,
            "ip_address": self.client.ip_address,
            "user_agent": self.client.user_agent,
            "notes": self.notes,
            "submitted_at": self.submitted_at.isoformat(),
        }

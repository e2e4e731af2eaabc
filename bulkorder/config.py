"""
Bulk Order Service Configuration
================================

PURPOSE:
    Pydantic-Settings based configuration for the bulk-order service.
    All settings can be overridden via environment variables (BULKORDER_ prefix).

UPDATED:
    2026-10-19 - Ingress rate limits, scanner limits, processor pool sizing,
        rollback window and retention.
"""

import logging
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class AccountPolicySettings(BaseModel):
    """Per-account overrides. Empty fields fall back to role defaults."""

    sku_patterns: List[str] = Field(default_factory=list)
    daily_value: Optional[float] = None
    monthly_value: Optional[float] = None
    single_order_value: Optional[float] = None
    single_order_items: Optional[int] = None


class Settings(BaseSettings):
    app_name: str = "Bulk Order Service"
    debug: bool = False  # Default OFF for production safety

    data_directory: str = "./data"
    log_directory: str = "logs"
    log_file: str = "bulkorder.jsonl"

    # Authentication (session tokens are HMAC-signed, see bulkorder.auth)
    auth_enabled: bool = True
    auth_cache_ttl: int = 300
    session_secret: Optional[str] = None

    # Ingress rate limit: requests per window per client
    rate_limit_requests: int = 10
    rate_limit_window_s: float = 300.0
    # Peers (IPs or CIDRs) whose X-Forwarded-For header is honoured
    trusted_proxies: List[str] = Field(default_factory=list)

    # Structural file scan
    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_extensions: List[str] = [".csv", ".txt"]
    allowed_mime_types: List[str] = [
        "text/csv",
        "text/plain",
        "application/csv",
        "application/vnd.ms-excel",
        "application/octet-stream",
    ]
    entropy_threshold: float = 7.5

    # Malware scan provider
    malware_provider: Literal["signature", "http"] = "signature"
    malware_scan_url: Optional[str] = None
    malware_scan_api_key: Optional[str] = None
    malware_scan_timeout_s: float = 30.0
    malware_max_bytes: int = 25 * 1024 * 1024

    # Parser limits
    max_rows: int = 1000
    max_quantity: int = 100_000

    # Processor
    batch_size: int = 20
    max_concurrent: int = 5
    capability_timeout_s: float = 10.0
    retry_attempts: int = 3
    retry_initial_delay_s: float = 1.0
    retry_max_delay_s: float = 10.0
    circuit_failure_threshold: int = 5
    circuit_reset_s: float = 60.0
    enable_alternatives: bool = True

    # Ledger
    rollback_window_hours: int = 24
    retention_days: int = 90
    retention_sweep_interval_s: int = 3600

    # Authorization
    default_sku_pattern: str = r"^[A-Z0-9-]+$"
    account_policies: Dict[str, AccountPolicySettings] = Field(default_factory=dict)

    # Audit + alerting
    audit_hmac_secret: Optional[str] = None
    alert_webhook_url: Optional[str] = None
    alert_webhook_timeout_s: float = 5.0
    alert_buffer_size: int = 200

    # Outbound commerce backend
    commerce_base_url: str = "http://localhost:8080"
    commerce_api_key: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "BULKORDER_"


settings = Settings()

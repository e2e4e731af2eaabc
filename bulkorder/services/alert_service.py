"""
Security Alert Service
======================

Raises security alerts and dispatches them to handlers, best-effort:
a handler failure is logged and never aborts the request that raised
the alert.

Handlers:
    LogAlertHandler      always on, structlog record on ``bulkorder.alerts``
    WebhookAlertHandler  POSTs JSON to BULKORDER_ALERT_WEBHOOK_URL (httpx)

Threat monitoring: monitor_event() counts events per (event type, key) in
a sliding window and raises one alert when a pattern's threshold is hit.

    RATE_LIMIT_EXCEEDED          10 / 5 min   → RATE_LIMIT_ABUSE (medium)
    MALICIOUS_PAYLOAD_DETECTED    3 / 10 min  → BULK_ATTACK (critical)
    UNAUTHORIZED_ACCESS           3 / 15 min  → UNAUTHORIZED_ACCESS_PATTERN (high)
    AUTH_FAILURE                  5 / 5 min   → CREDENTIAL_STUFFING (high)
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

import httpx
import structlog

from bulkorder.config import settings
from bulkorder.schemas.security import Severity
from bulkorder.services.rate_limiter import SlidingWindow

logger = logging.getLogger(__name__)
alert_log = structlog.get_logger("bulkorder.alerts")


class AlertCategory(str, Enum):
    MALWARE_DETECTED = "malware_detected"
    MALICIOUS_PAYLOAD_DETECTED = "malicious_payload_detected"
    SUSPICIOUS_FILE = "suspicious_file"
    UNSCANNED_FILE = "unscanned_file"
    SCANNER_UNAVAILABLE = "scanner_unavailable"
    SKU_POLICY_VIOLATION = "sku_policy_violation"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    BULK_ATTACK = "bulk_attack"
    UNAUTHORIZED_ACCESS_PATTERN = "unauthorized_access_pattern"
    CREDENTIAL_STUFFING = "credential_stuffing"


RECOMMENDED_ACTIONS: Dict[AlertCategory, List[str]] = {
    AlertCategory.MALWARE_DETECTED: [
        "Quarantine the uploading account pending review",
        "Notify the account owner",
    ],
    AlertCategory.MALICIOUS_PAYLOAD_DETECTED: [
        "Review the uploader's recent activity",
        "Consider blocking the source IP",
    ],
    AlertCategory.SUSPICIOUS_FILE: ["Review the rejected file metadata"],
    AlertCategory.UNSCANNED_FILE: ["Review why the file exceeded the scan size limit"],
    AlertCategory.SCANNER_UNAVAILABLE: [
        "Check the malware scanning provider",
        "Expect uploads to be rejected until scanning recovers",
    ],
    AlertCategory.SKU_POLICY_VIOLATION: [
        "Confirm the account's SKU allow-list",
        "Check for catalog enumeration attempts",
    ],
    AlertCategory.RATE_LIMIT_ABUSE: ["Block the source IP temporarily"],
    AlertCategory.BULK_ATTACK: [
        "Block the source IP",
        "Suspend bulk ordering for the account",
    ],
    AlertCategory.UNAUTHORIZED_ACCESS_PATTERN: [
        "Review the account's role assignments",
        "Force re-authentication",
    ],
    AlertCategory.CREDENTIAL_STUFFING: [
        "Block the source IP",
        "Rotate the session secret if tokens may be forged",
    ],
}


@dataclass(frozen=True)
class SecurityAlert:
    category: AlertCategory
    severity: Severity
    source: str
    description: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:16]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def recommended_actions(self) -> List[str]:
        return RECOMMENDED_ACTIONS.get(self.category, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "source": self.source,
            "description": self.description,
            "evidence": self.evidence,
            "timestamp": self.timestamp.isoformat(),
            "recommended_actions": self.recommended_actions,
        }


@dataclass(frozen=True)
class ThreatPattern:
    event_type: str
    threshold: int
    window_s: float
    severity: Severity
    category: AlertCategory


DEFAULT_THREAT_PATTERNS: List[ThreatPattern] = [
    ThreatPattern("RATE_LIMIT_EXCEEDED", 10, 5 * 60, Severity.MEDIUM, AlertCategory.RATE_LIMIT_ABUSE),
    ThreatPattern("MALICIOUS_PAYLOAD_DETECTED", 3, 10 * 60, Severity.CRITICAL, AlertCategory.BULK_ATTACK),
    ThreatPattern("UNAUTHORIZED_ACCESS", 3, 15 * 60, Severity.HIGH, AlertCategory.UNAUTHORIZED_ACCESS_PATTERN),
    ThreatPattern("AUTH_FAILURE", 5, 5 * 60, Severity.HIGH, AlertCategory.CREDENTIAL_STUFFING),
]


class AlertHandler(Protocol):
    name: str

    async def handle(self, alert: SecurityAlert) -> None: ...


class LogAlertHandler:
    name = "log"

    async def handle(self, alert: SecurityAlert) -> None:
        log = alert_log.bind(
            alert_id=alert.id,
            category=alert.category.value,
            severity=alert.severity.value,
            source=alert.source,
        )
        if alert.severity in (Severity.HIGH, Severity.CRITICAL):
            log.error("security_alert", description=alert.description, evidence=alert.evidence)
        else:
            log.warning("security_alert", description=alert.description, evidence=alert.evidence)


class WebhookAlertHandler:
    name = "webhook"

    def __init__(self, url: str, timeout_s: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s, connect=2.0))
        return self._client

    async def handle(self, alert: SecurityAlert) -> None:
        response = await self._get_client().post(
            self.url,
            json=alert.to_dict(),
            headers={
                "X-Alert-Type": alert.category.value,
                "X-Alert-Severity": alert.severity.value,
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class SecurityAlertService:
    """Best-effort alert dispatch plus threshold-based threat monitoring."""

    def __init__(
        self,
        handlers: Optional[List[AlertHandler]] = None,
        patterns: Optional[List[ThreatPattern]] = None,
        buffer_size: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.handlers: List[AlertHandler] = handlers if handlers is not None else [LogAlertHandler()]
        self.patterns: Dict[str, ThreatPattern] = {
            p.event_type: p for p in (patterns if patterns is not None else DEFAULT_THREAT_PATTERNS)
        }
        self._windows: Dict[Tuple[str, str], SlidingWindow] = defaultdict(SlidingWindow)
        self._recent: Deque[SecurityAlert] = deque(maxlen=buffer_size)
        self._clock = clock

    @property
    def recent_alerts(self) -> List[SecurityAlert]:
        return list(self._recent)

    async def raise_alert(
        self,
        category: AlertCategory,
        severity: Severity,
        source: str,
        description: str,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> SecurityAlert:
        alert = SecurityAlert(
            category=category,
            severity=severity,
            source=source,
            description=description,
            evidence=evidence or {},
        )
        self._recent.append(alert)
        results = await asyncio.gather(
            *(handler.handle(alert) for handler in self.handlers),
            return_exceptions=True,
        )
        for handler, result in zip(self.handlers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "alert_handler_failed",
                    extra={"handler": handler.name, "alert_id": alert.id, "error": repr(result)},
                )
        return alert

    async def monitor_event(
        self,
        event_type: str,
        key: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityAlert]:
        """Count one occurrence; raise an alert the moment the threshold is reached."""
        pattern = self.patterns.get(event_type)
        if pattern is None:
            return None
        count = self._windows[(event_type, key)].count_and_record(pattern.window_s, self._clock())
        if count != pattern.threshold:
            return None
        return await self.raise_alert(
            pattern.category,
            pattern.severity,
            source="threat_monitor",
            description=f"{event_type} occurred {count} times within {int(pattern.window_s)}s for {key}",
            evidence={"key": key, "count": count, **(details or {})},
        )

    def sweep(self) -> int:
        """Drop monitor windows with no events left. Returns windows removed."""
        now = self._clock()
        stale = []
        for (event_type, key), window in list(self._windows.items()):
            pattern = self.patterns.get(event_type)
            if pattern is None or window.count_in_window(pattern.window_s, now) == 0:
                stale.append((event_type, key))
        for window_key in stale:
            self._windows.pop(window_key, None)
        return len(stale)

    async def aclose(self) -> None:
        for handler in self.handlers:
            close = getattr(handler, "aclose", None)
            if close is not None:
                await close()


def build_alert_service() -> SecurityAlertService:
    handlers: List[AlertHandler] = [LogAlertHandler()]
    if settings.alert_webhook_url:
        handlers.append(WebhookAlertHandler(settings.alert_webhook_url, settings.alert_webhook_timeout_s))
    return SecurityAlertService(handlers=handlers, buffer_size=settings.alert_buffer_size)

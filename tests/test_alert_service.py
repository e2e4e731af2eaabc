"""
Tests for security alert dispatch and threshold-based threat monitoring.
"""

import pytest

from bulkorder.schemas.security import Severity
from bulkorder.services.alert_service import (
    AlertCategory,
    SecurityAlert,
    SecurityAlertService,
    ThreatPattern,
)


class RecordingHandler:
    name = "recording"

    def __init__(self):
        self.alerts = []

    async def handle(self, alert):
        self.alerts.append(alert)


class FailingHandler:
    name = "failing"

    async def handle(self, alert):
        raise ConnectionError("webhook unreachable")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestRaiseAlert:
    @pytest.mark.asyncio
    async def test_dispatches_to_every_handler(self):
        recorder = RecordingHandler()
        service = SecurityAlertService(handlers=[recorder])
        alert = await service.raise_alert(
            AlertCategory.MALWARE_DETECTED, Severity.HIGH, source="malware_scan", description="EICAR",
        )
        assert recorder.alerts == [alert]
        assert service.recent_alerts == [alert]
        assert alert.recommended_actions

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self):
        recorder = RecordingHandler()
        service = SecurityAlertService(handlers=[FailingHandler(), recorder])
        await service.raise_alert(AlertCategory.SUSPICIOUS_FILE, Severity.MEDIUM, source="file_scan",
                                  description="bad magic")
        assert len(recorder.alerts) == 1

    @pytest.mark.asyncio
    async def test_recent_buffer_is_bounded(self):
        service = SecurityAlertService(handlers=[], buffer_size=2)
        for i in range(3):
            await service.raise_alert(AlertCategory.SUSPICIOUS_FILE, Severity.LOW, source="t", description=str(i))
        assert [a.description for a in service.recent_alerts] == ["1", "2"]

    def test_to_dict(self):
        alert = SecurityAlert(AlertCategory.BULK_ATTACK, Severity.CRITICAL, "threat_monitor", "burst")
        data = alert.to_dict()
        assert data["category"] == "bulk_attack"
        assert data["severity"] == "critical"
        assert data["recommended_actions"]


# ---------------------------------------------------------------------------
# Threat monitor
# ---------------------------------------------------------------------------

class TestMonitorEvent:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def service(self, clock):
        return SecurityAlertService(
            handlers=[],
            patterns=[ThreatPattern("AUTH_FAILURE", 3, 60, Severity.HIGH, AlertCategory.CREDENTIAL_STUFFING)],
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_alerts_once_at_threshold(self, service):
        results = [await service.monitor_event("AUTH_FAILURE", "10.0.0.1") for _ in range(5)]
        raised = [r for r in results if r is not None]
        assert len(raised) == 1
        assert results[2] is raised[0]
        assert raised[0].category == AlertCategory.CREDENTIAL_STUFFING
        assert raised[0].evidence["count"] == 3

    @pytest.mark.asyncio
    async def test_window_expiry_resets_count(self, service, clock):
        for _ in range(2):
            await service.monitor_event("AUTH_FAILURE", "10.0.0.1")
        clock.now += 61
        assert await service.monitor_event("AUTH_FAILURE", "10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_keys_counted_separately(self, service):
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            assert await service.monitor_event("AUTH_FAILURE", ip) is None

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, service):
        assert await service.monitor_event("SOMETHING_ELSE", "k") is None

    @pytest.mark.asyncio
    async def test_sweep_drops_only_expired_windows(self, service, clock):
        await service.monitor_event("AUTH_FAILURE", "10.0.0.1")
        clock.now += 30
        await service.monitor_event("AUTH_FAILURE", "10.0.0.2")
        clock.now += 31

        assert service.sweep() == 1
        assert service.sweep() == 0

        clock.now += 30
        assert service.sweep() == 1

    @pytest.mark.asyncio
    async def test_count_restarts_after_sweep(self, service, clock):
        for _ in range(2):
            await service.monitor_event("AUTH_FAILURE", "10.0.0.1")
        clock.now += 61
        service.sweep()
        results = [await service.monitor_event("AUTH_FAILURE", "10.0.0.1") for _ in range(3)]
        assert results[:2] == [None, None]
        assert results[2] is not None

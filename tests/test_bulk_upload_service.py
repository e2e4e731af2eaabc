"""
Tests for the upload orchestration: background processing, shutdown drain.
"""

import json

import pytest

from bulkorder.dependencies import build_services
from bulkorder.models.operation import OperationStatus
from bulkorder.schemas.upload import BulkOrderRequest, ClientMetadata
from bulkorder.services.alert_service import SecurityAlertService
from bulkorder.services.audit_logger import AuditEventType
from bulkorder.services.bulk_processor import BulkProcessor
from bulkorder.services.retry import RetryPolicy


@pytest.fixture
def services(engine, commerce):
    return build_services(
        engine=engine,
        commerce=commerce,
        alerts=SecurityAlertService(handlers=[]),
        processor=BulkProcessor(
            retry=RetryPolicy(attempts=1, initial_delay_s=0, max_delay_s=0),
            call_timeout_s=10,
        ),
    )


@pytest.fixture
def upload(identity):
    def _upload(content: bytes) -> BulkOrderRequest:
        return BulkOrderRequest(
            content=content,
            identity=identity,
            client=ClientMetadata(ip_address="10.0.0.1", filename="order.csv", declared_mime="text/csv"),
        )
    return _upload


async def _events(channel) -> list:
    return [json.loads(chunk) async for chunk in channel]


class TestProcessing:
    @pytest.mark.asyncio
    async def test_processing_runs_to_completion(self, services, upload, commerce):
        channel = await services.uploads.start_upload(upload(b"sku,quantity,price\nA1,2,10\n"))
        events = await _events(channel)

        assert [e["type"] for e in events] == ["progress", "complete"]
        record = await services.ledger.get_operation(channel.operation_id)
        assert record.status == OperationStatus.COMPLETED.value
        assert [(i.sku, i.quantity) for i in commerce.cart] == [("A1", 2)]

    @pytest.mark.asyncio
    async def test_drain_cancels_stuck_processing_and_fails_operation(self, services, upload, commerce):
        commerce.slow_skus.add("D4")
        commerce.slow_s = 5.0
        channel = await services.uploads.start_upload(upload(b"sku,quantity\nD4,1\n"))

        await services.uploads.drain(timeout=0.05)

        record = await services.ledger.get_operation(channel.operation_id)
        assert record.status == OperationStatus.FAILED.value
        assert record.completed_at is not None

        events = await _events(channel)
        assert [e["type"] for e in events] == ["error"]
        assert events[0]["payload"]["operation_id"] == channel.operation_id

        failures = await services.audit.query(event_type=AuditEventType.BULK_UPLOAD_FAILURE)
        assert [e.resource for e in failures] == [channel.operation_id]

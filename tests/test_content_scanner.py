"""
Tests for the structural file scan and the malware scan stage.
"""

import asyncio
import os

import pytest

from bulkorder.core.errors import SecurityError
from bulkorder.schemas.security import FindingCategory
from bulkorder.schemas.upload import BulkOrderRequest, ClientMetadata
from bulkorder.services.content_scanner import (
    EICAR_SIGNATURE,
    ContentSecurityScanner,
    FileScanner,
    MalwareScanResult,
    MalwareScanner,
    SignatureScanProvider,
    shannon_entropy,
    sniff_text_mime,
)

CLEAN_CSV = b"sku,quantity,price\nA1,5,10.00\nB2,3,20.00\n"


@pytest.fixture
def upload(identity):
    def _upload(content: bytes = CLEAN_CSV, filename: str = "order.csv", mime: str = "text/csv") -> BulkOrderRequest:
        return BulkOrderRequest(
            content=content,
            identity=identity,
            client=ClientMetadata(ip_address="10.0.0.1", filename=filename, declared_mime=mime),
        )
    return _upload


@pytest.fixture
def scanner():
    return ContentSecurityScanner(
        FileScanner(max_bytes=1024),
        MalwareScanner(SignatureScanProvider(), timeout_s=1.0),
    )


def _patterns(report) -> set:
    return {t.pattern for t in report.threats}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_entropy_of_uniform_bytes(self):
        assert shannon_entropy(bytes(range(256))) == pytest.approx(8.0)

    def test_entropy_of_empty(self):
        assert shannon_entropy(b"") == 0.0

    def test_sniff_csv(self):
        assert sniff_text_mime(CLEAN_CSV) == "text/csv"

    def test_sniff_binary(self):
        assert sniff_text_mime(b"\xff\xfe\xfd\x00binary") is None


# ---------------------------------------------------------------------------
# Structural scan
# ---------------------------------------------------------------------------

class TestStructuralScan:
    def test_clean_csv_passes(self, scanner, upload):
        report = scanner.structural_scan(upload())
        assert report.safe
        assert report.metadata["detected_mime"] == "text/csv"

    def test_oversized(self, scanner, upload):
        report = scanner.structural_scan(upload(CLEAN_CSV * 40))
        assert not report.safe
        assert "oversized" in _patterns(report)

    def test_extension_not_allowed(self, scanner, upload):
        report = scanner.structural_scan(upload(filename="order.xlsx"))
        assert "invalid_extension" in _patterns(report)

    def test_declared_mime_not_allowed(self, scanner, upload):
        report = scanner.structural_scan(upload(mime="application/x-msdownload"))
        assert "invalid_mime" in _patterns(report)

    def test_executable_disguised_as_csv(self, scanner, upload):
        report = scanner.structural_scan(upload(b"MZ\x90\x00\x03\x00\x00\x00"))
        assert "windows_executable" in _patterns(report)
        assert any(t.category == FindingCategory.MALWARE for t in report.threats)

    def test_embedded_script(self, scanner, upload):
        report = scanner.structural_scan(upload(b"sku,quantity\n<script>alert(1)</script>,1\n"))
        assert "html_script" in _patterns(report)

    def test_high_entropy_payload(self, upload):
        report = FileScanner(max_bytes=10_000, entropy_threshold=5.0).scan(upload(os.urandom(800)))
        assert not report.safe


# ---------------------------------------------------------------------------
# Malware scan
# ---------------------------------------------------------------------------

class TestMalwareScan:
    @pytest.mark.asyncio
    async def test_clean_file(self, scanner, upload):
        report = await scanner.malware_scan(upload())
        assert report.safe
        assert report.metadata["provider"] == "signature"

    @pytest.mark.asyncio
    async def test_eicar_detected(self, scanner, upload):
        report = await scanner.malware_scan(upload(b"sku,quantity\n" + EICAR_SIGNATURE + b",1\n"))
        assert not report.safe
        assert report.metadata["infected"] is True
        assert "EICAR-Test-File" in _patterns(report)

    @pytest.mark.asyncio
    async def test_provider_failure_fails_closed(self, upload):
        class BrokenProvider:
            name = "broken"

            async def scan(self, content, filename):
                raise ConnectionError("scanner offline")

        scanner = ContentSecurityScanner(FileScanner(), MalwareScanner(BrokenProvider()))
        with pytest.raises(SecurityError) as exc_info:
            await scanner.malware_scan(upload())
        assert exc_info.value.code == "BLK-SEC-004"

    @pytest.mark.asyncio
    async def test_provider_timeout_fails_closed(self, upload):
        class SlowProvider:
            name = "slow"

            async def scan(self, content, filename):
                await asyncio.sleep(1)
                return MalwareScanResult(clean=True, infected=False, provider=self.name)

        scanner = ContentSecurityScanner(FileScanner(), MalwareScanner(SlowProvider(), timeout_s=0.05))
        with pytest.raises(SecurityError) as exc_info:
            await scanner.malware_scan(upload())
        assert exc_info.value.code == "BLK-SEC-004"

    @pytest.mark.asyncio
    async def test_too_large_to_scan_is_unverified(self, upload):
        scanner = ContentSecurityScanner(FileScanner(), MalwareScanner(SignatureScanProvider(), max_bytes=10))
        report = await scanner.malware_scan(upload())
        assert not report.safe
        assert "unverified" in _patterns(report)

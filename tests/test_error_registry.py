"""
Tests for registry.yaml loading and validation.
"""

import pytest

from bulkorder.core.errors import BulkOrderError
from bulkorder.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry

ENTRY = """
  - code: {code}
    title: Example
    severity: {severity}
    retryable: false
    user_action_required: true
    http_status: {status}
    safe_message: Something went wrong.
"""


def _write(tmp_path, *entries: str):
    path = tmp_path / "registry.yaml"
    path.write_text("errors:\n" + "".join(entries))
    return path


def _entry(code="BLK-VAL-001", severity="WARN", status=400) -> str:
    return ENTRY.format(code=code, severity=severity, status=status)


class TestShippedRegistry:
    def test_loaded_with_every_default_code(self):
        assert error_registry.loaded
        for cls in [BulkOrderError, *BulkOrderError.__subclasses__()]:
            assert cls.default_code in error_registry, cls.__name__

    def test_entry_fields(self):
        entry = error_registry.get("BLK-RATE-001")
        assert entry.http_status == 429
        assert entry.domain == "RATE"
        assert entry.retryable is True
        assert entry.remediation

    def test_unknown_code(self):
        assert error_registry.get("BLK-SYS-999") is None


class TestValidation:
    def test_valid_file(self, tmp_path):
        registry = ErrorRegistry()
        registry.load(_write(tmp_path, _entry(), _entry(code="BLK-SYS-001", severity="ERROR", status=500)))
        assert len(registry) == 2
        assert registry.get("BLK-SYS-001").remediation == []

    @pytest.mark.parametrize(
        "entry, message",
        [
            (_entry(code="ERR-1"), "Invalid code format"),
            (_entry(code="BLK-FOO-001"), "unknown domain"),
            (_entry(severity="LOUD"), "unknown severity"),
            (_entry(status=200), "not an error status"),
            ("\n  - code: BLK-VAL-001\n    title: Missing fields\n", "missing fields"),
        ],
    )
    def test_rejects_malformed_entry(self, tmp_path, entry, message):
        with pytest.raises(RegistryValidationError, match=message):
            ErrorRegistry().load(_write(tmp_path, entry))

    def test_rejects_duplicate_code(self, tmp_path):
        with pytest.raises(RegistryValidationError, match="Duplicate code"):
            ErrorRegistry().load(_write(tmp_path, _entry(), _entry()))

    def test_failed_load_keeps_previous_entries(self, tmp_path):
        registry = ErrorRegistry()
        registry.load(_write(tmp_path, _entry()))
        with pytest.raises(RegistryValidationError):
            registry.load(_write(tmp_path, _entry(severity="LOUD")))
        assert "BLK-VAL-001" in registry

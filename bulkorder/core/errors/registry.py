"""
Error registry: the BLK-* codes the API can return, loaded from registry.yaml.

Each entry fixes the HTTP status, log severity and user-safe message for
one code; the error middleware renders BulkOrderError through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from bulkorder.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

DOMAINS = {"API", "AUTH", "RATE", "SEC", "VAL", "CONC", "EXT", "OPS", "RBK", "SYS"}
SEVERITIES = {"INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {"code", "title", "severity", "retryable", "user_action_required", "http_status", "safe_message"}


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)

    @property
    def domain(self) -> str:
        return self.code.split("-")[1]


class RegistryValidationError(Exception):
    """registry.yaml is malformed."""


def _parse_entry(idx: int, raw: dict) -> ErrorEntry:
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")
    entry = ErrorEntry(
        code=code,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
    )
    if entry.domain not in DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {entry.domain!r}")
    if entry.severity not in SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {entry.severity!r}")
    if not 400 <= entry.http_status <= 599:
        raise RegistryValidationError(f"{code}: http_status {entry.http_status} is not an error status")
    return entry


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}

    def load(self, path: Optional[Path] = None) -> None:
        with open(path or DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        logger.info("error_registry_loaded", extra={"count": len(entries)})

    @property
    def loaded(self) -> bool:
        return bool(self._entries)

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def __contains__(self, code: str) -> bool:
        return code in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# Loaded once at startup (lifespan) and by the test suite
error_registry = ErrorRegistry()

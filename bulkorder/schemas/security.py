"""
Security finding types shared by the scanners and the parser.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional


class FindingCategory(str, Enum):
    MALWARE = "malware"
    INJECTION = "injection"
    POLICY = "policy"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Stage(str, Enum):
    INGRESS = "ingress"
    FILE_SCAN = "file_scan"
    MALWARE_SCAN = "malware_scan"
    PARSER = "parser"
    AUTHORIZATION = "authorization"


@dataclass(frozen=True)
class SecurityFinding:
    """One reason a payload was considered unsafe."""

    category: FindingCategory
    severity: Severity
    description: str
    stage: Stage
    pattern: Optional[str] = None
    row: Optional[int] = None
    column: Optional[str] = None
    evidence: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.value
        data["stage"] = self.stage.value
        return {k: v for k, v in data.items() if v is not None}


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


def highest_severity(findings) -> Optional[Severity]:
    ranked = sorted((f.severity for f in findings), key=_SEVERITY_RANK.__getitem__)
    return ranked[-1] if ranked else None


def redact_evidence(value: str, limit: int = 40) -> str:
    """Truncate a suspicious value for audit records."""
    value = value.replace("\n", "\\n").replace("\r", "\\r")
    return value if len(value) <= limit else value[:limit] + "…"

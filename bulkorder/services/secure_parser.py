"""
Secure CSV Parser
=================

Structural and injection-aware parsing of bulk order files.

Defenses:
1. Content limits: size cap, NUL / control-character density (binary)
2. Structure: required header, column allow-list with aliases, row cap,
   per-row column count, per-field types and length caps
3. Per-cell threat detection: spreadsheet formulas, script fragments,
   SQL meta-sequences, shell command injection, path traversal
4. Output sanitization: control characters stripped, notes HTML-escaped

Policy is fail-closed at batch level: if ANY cell carries a threat, or ANY
row is structurally invalid, the whole batch is rejected and no rows are
returned.
"""

import csv
import html
import io
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from bulkorder.schemas.bulk import ParsedRow, Priority
from bulkorder.schemas.security import (
    FindingCategory,
    SecurityFinding,
    Severity,
    Stage,
    redact_evidence,
)

logger = logging.getLogger(__name__)

MAX_CONTENT_BYTES = 5 * 1024 * 1024
MAX_ROWS = 1000
MAX_QUANTITY = 100_000
MAX_REPORTED_FINDINGS = 100
BINARY_CONTROL_RATIO = 0.01

HEADER_ALIASES: Dict[str, str] = {
    "sku": "sku",
    "product_sku": "sku",
    "item": "sku",
    "item_sku": "sku",
    "quantity": "quantity",
    "qty": "quantity",
    "price": "unit_price",
    "unit_price": "unit_price",
    "notes": "notes",
    "note": "notes",
    "reference": "reference",
    "reference_id": "reference",
    "po_number": "reference",
    "priority": "priority",
}
REQUIRED_COLUMNS = ("sku", "quantity")

MAX_FIELD_LENGTHS: Dict[str, int] = {
    "sku": 100,
    "quantity": 12,
    "unit_price": 20,
    "notes": 500,
    "reference": 100,
    "priority": 10,
}

# ---------------------------------------------------------------------------
# Threat patterns
# ---------------------------------------------------------------------------

_FORMULA_PREFIXES = ("=", "@", "\t", "\r")
_SIGNED_PREFIXES = ("+", "-")
_PLAIN_NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")

_THREAT_PATTERNS: List[tuple[str, re.Pattern, Severity]] = [
    # Script fragments
    ("script_tag", re.compile(r"<\s*/?\s*(script|iframe|object|embed)\b", re.IGNORECASE), Severity.HIGH),
    ("javascript_uri", re.compile(r"(java|vb)script\s*:", re.IGNORECASE), Severity.HIGH),
    ("data_html_uri", re.compile(r"data\s*:\s*text/html", re.IGNORECASE), Severity.HIGH),
    ("event_handler", re.compile(r"\bon[a-z]+\s*=", re.IGNORECASE), Severity.HIGH),
    ("script_eval", re.compile(r"\b(eval|expression)\s*\(", re.IGNORECASE), Severity.HIGH),
    # SQL meta-sequences
    ("sql_union", re.compile(r"\bunion\s+(all\s+)?select\b", re.IGNORECASE), Severity.HIGH),
    ("sql_stacked", re.compile(r";\s*(select|insert|update|delete|drop|alter|create|exec|shutdown|truncate)\b", re.IGNORECASE), Severity.HIGH),
    ("sql_ddl", re.compile(r"\b(drop|truncate)\s+(table|database)\b", re.IGNORECASE), Severity.HIGH),
    ("sql_tautology", re.compile(r"'\s*(or|and)\s+('?\w+'?)\s*=\s*\2", re.IGNORECASE), Severity.HIGH),
    ("sql_comment", re.compile(r"('\s*--|/\*.*?\*/|--\s*$)"), Severity.MEDIUM),
    ("sql_catalog", re.compile(r"\b(information_schema|xp_cmdshell|sp_executesql|sys\.(tables|objects|columns))\b", re.IGNORECASE), Severity.HIGH),
    ("sql_timing", re.compile(r"\b(sleep|benchmark|pg_sleep)\s*\(|\bwaitfor\s+delay\b", re.IGNORECASE), Severity.HIGH),
    # Shell command injection
    ("command_substitution", re.compile(r"\$\([^)]*\)|`[^`]*`"), Severity.HIGH),
    ("command_chain", re.compile(r"(\|\||&&)\s*(rm|wget|curl|bash|sh|nc|cat|chmod|powershell|cmd)\b", re.IGNORECASE), Severity.HIGH),
    ("command_pipe", re.compile(r"\|\s*(sh|bash|nc|powershell|cmd)\b", re.IGNORECASE), Severity.HIGH),
    # Path traversal
    ("path_traversal", re.compile(r"(\.\./|\.\.\\|%2e%2e(%2f|%5c|/|\\))", re.IGNORECASE), Severity.HIGH),
    ("sensitive_path", re.compile(r"(/etc/(passwd|shadow)|\\windows\\system32)", re.IGNORECASE), Severity.HIGH),
]

# Control characters to strip (keep newline, tab, carriage return)
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_QUANTITY_RE = re.compile(r"^\d+$")
_PRICE_RE = re.compile(r"^\d+(\.\d{1,2})?$")


@dataclass
class ParseError:
    message: str
    row: Optional[int] = None
    column: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in {"row": self.row, "column": self.column, "message": self.message}.items() if v is not None}


@dataclass
class ParseResult:
    success: bool
    rows: List[ParsedRow] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    security_threats: List[SecurityFinding] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


def detect_cell_threats(value: str) -> List[tuple[str, Severity]]:
    """Return (pattern name, severity) for every threat found in one cell."""
    hits: List[tuple[str, Severity]] = []
    if value:
        head = value.lstrip(" ")
        if head.startswith(_FORMULA_PREFIXES) or value.startswith(_FORMULA_PREFIXES):
            hits.append(("formula_injection", Severity.HIGH))
        elif head.startswith(_SIGNED_PREFIXES) and not _PLAIN_NUMBER_RE.match(head.strip()):
            hits.append(("formula_injection", Severity.HIGH))
    for name, pattern, severity in _THREAT_PATTERNS:
        if pattern.search(value):
            hits.append((name, severity))
    return hits


def sanitize_text(value: str) -> str:
    return _CONTROL_CHAR_RE.sub("", value).strip()


class SecureCSVParser:
    """
    Usage:
        parser = SecureCSVParser()
        result = parser.parse(content, user_id="u1", account_id="acme")
        if not result.success:
            # result.security_threats / result.errors explain why
    """

    def __init__(
        self,
        max_bytes: int = MAX_CONTENT_BYTES,
        max_rows: int = MAX_ROWS,
        max_quantity: int = MAX_QUANTITY,
    ):
        self.max_bytes = max_bytes
        self.max_rows = max_rows
        self.max_quantity = max_quantity

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def parse(self, content: bytes, user_id: Optional[str] = None, account_id: Optional[str] = None) -> ParseResult:
        errors: List[ParseError] = []
        threats: List[SecurityFinding] = []

        content_threat = self._check_content(content)
        if content_threat is not None:
            return self._finish([], errors, [content_threat], 0, user_id, account_id)

        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            errors.append(ParseError(f"File is not valid UTF-8 (byte {exc.start})"))
            return self._finish([], errors, threats, 0, user_id, account_id)

        reader = csv.reader(io.StringIO(text, newline=""), strict=True)
        try:
            records = [(reader.line_num, record) for record in reader]
        except csv.Error as exc:
            errors.append(ParseError(f"Malformed CSV near line {reader.line_num}: {exc}"))
            return self._finish([], errors, threats, 0, user_id, account_id)

        records = [(line, rec) for line, rec in records if any(cell.strip() for cell in rec)]
        if not records:
            errors.append(ParseError("File contains no header row"))
            return self._finish([], errors, threats, 0, user_id, account_id)

        _, header_cells = records[0]
        columns = self._parse_header(header_cells, errors, threats)
        data = records[1:]

        if not data:
            errors.append(ParseError("File contains no data rows"))
        if len(data) > self.max_rows:
            errors.append(ParseError(f"File has {len(data)} data rows; the maximum is {self.max_rows}"))
            data = data[: self.max_rows]

        rows: List[ParsedRow] = []
        for row_index, (_, cells) in enumerate(data, start=1):
            self._scan_cells(row_index, cells, columns, threats)
            if columns is None:
                continue
            if len(cells) != len(columns):
                errors.append(ParseError(
                    f"Expected {len(columns)} columns, found {len(cells)}", row=row_index,
                ))
                continue
            parsed = self._build_row(row_index, dict(zip(columns, cells)), errors)
            if parsed is not None:
                rows.append(parsed)

        return self._finish(rows, errors, threats, len(data), user_id, account_id)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def _check_content(self, content: bytes) -> Optional[SecurityFinding]:
        if len(content) > self.max_bytes:
            return SecurityFinding(
                FindingCategory.POLICY, Severity.MEDIUM,
                f"Content size {len(content)} exceeds limit {self.max_bytes}",
                Stage.PARSER, pattern="oversized",
            )
        if b"\x00" in content:
            return SecurityFinding(
                FindingCategory.POLICY, Severity.HIGH,
                "Binary content (NUL bytes) detected", Stage.PARSER, pattern="binary_content",
            )
        controls = sum(1 for b in content if b < 0x20 and b not in (0x09, 0x0A, 0x0D))
        if content and controls / len(content) > BINARY_CONTROL_RATIO:
            return SecurityFinding(
                FindingCategory.POLICY, Severity.HIGH,
                "Control character density suggests binary content", Stage.PARSER, pattern="binary_content",
            )
        return None

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------

    def _parse_header(
        self,
        cells: List[str],
        errors: List[ParseError],
        threats: List[SecurityFinding],
    ) -> Optional[List[str]]:
        self._scan_cells(0, cells, None, threats)
        columns: List[str] = []
        for cell in cells:
            name = re.sub(r"\s+", "_", cell.strip().lower())
            canonical = HEADER_ALIASES.get(name)
            if canonical is None:
                errors.append(ParseError(f"Unknown column {redact_evidence(cell)!r}", row=0))
                return None
            if canonical in columns:
                errors.append(ParseError(f"Duplicate column {canonical!r}", row=0))
                return None
            columns.append(canonical)
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            errors.append(ParseError(f"Missing required column(s): {', '.join(missing)}", row=0))
            return None
        return columns

    # ------------------------------------------------------------------
    # Cells
    # ------------------------------------------------------------------

    def _scan_cells(
        self,
        row_index: int,
        cells: List[str],
        columns: Optional[List[str]],
        threats: List[SecurityFinding],
    ) -> None:
        for position, value in enumerate(cells):
            column = columns[position] if columns and position < len(columns) else f"col{position + 1}"
            for name, severity in detect_cell_threats(value):
                threats.append(SecurityFinding(
                    category=FindingCategory.INJECTION,
                    severity=severity,
                    description=f"{name.replace('_', ' ')} in {column}",
                    stage=Stage.PARSER,
                    pattern=name,
                    row=row_index,
                    column=column,
                    evidence=redact_evidence(value),
                ))

    def _build_row(self, row_index: int, raw: Dict[str, str], errors: List[ParseError]) -> Optional[ParsedRow]:
        row_errors: List[ParseError] = []

        def fail(column: str, message: str) -> None:
            row_errors.append(ParseError(message, row=row_index, column=column))

        for column, value in raw.items():
            limit = MAX_FIELD_LENGTHS[column]
            if len(value) > limit:
                fail(column, f"{column} exceeds {limit} characters")

        sku = sanitize_text(raw.get("sku", ""))
        if not sku:
            fail("sku", "SKU is required")

        quantity_raw = raw.get("quantity", "").strip()
        quantity = 0
        if not _QUANTITY_RE.match(quantity_raw):
            fail("quantity", f"Quantity must be a positive whole number, got {redact_evidence(quantity_raw)!r}")
        else:
            quantity = int(quantity_raw)
            if quantity <= 0:
                fail("quantity", "Quantity must be greater than zero")
            elif quantity > self.max_quantity:
                fail("quantity", f"Quantity exceeds maximum of {self.max_quantity}")

        unit_price: Optional[Decimal] = None
        price_raw = raw.get("unit_price", "").strip()
        if price_raw:
            if not _PRICE_RE.match(price_raw):
                fail("unit_price", "Price must be a non-negative amount with at most 2 decimals")
            else:
                try:
                    unit_price = Decimal(price_raw)
                except InvalidOperation:
                    fail("unit_price", "Price is not a number")

        priority_raw = raw.get("priority", "").strip().lower() or Priority.NORMAL.value
        try:
            priority = Priority(priority_raw)
        except ValueError:
            fail("priority", "Priority must be one of high, normal, low")
            priority = Priority.NORMAL

        notes = sanitize_text(raw.get("notes", ""))
        reference = sanitize_text(raw.get("reference", ""))

        if row_errors:
            errors.extend(row_errors)
            return None

        return ParsedRow(
            row_index=row_index,
            sku=sku,
            quantity=quantity,
            unit_price=unit_price,
            notes=html.escape(notes)[:500] or None,
            reference=reference or None,
            priority=priority,
        )

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _finish(
        self,
        rows: List[ParsedRow],
        errors: List[ParseError],
        threats: List[SecurityFinding],
        total_rows: int,
        user_id: Optional[str],
        account_id: Optional[str],
    ) -> ParseResult:
        success = not errors and not threats
        if threats:
            logger.warning(
                "SECURITY_AUDIT: csv_threats_detected",
                extra={
                    "user_id": user_id,
                    "account_id": account_id,
                    "threat_count": len(threats),
                    "patterns": sorted({t.pattern for t in threats if t.pattern}),
                },
            )
        summary = {
            "total_rows": total_rows,
            "valid_rows": len(rows) if success else 0,
            "invalid_rows": len({e.row for e in errors if e.row}),
            "threat_count": len(threats),
        }
        return ParseResult(
            success=success,
            rows=rows if success else [],
            errors=errors,
            security_threats=threats[:MAX_REPORTED_FINDINGS],
            summary=summary,
        )

"""
Content Security Scanner
========================

Two independent stages, both run before any parsing:

1. Structural scan (FileScanner)
   - empty / oversized payloads
   - extension and declared MIME allow-lists
   - magic-byte sniffing: content must look like text
   - dangerous byte patterns: executables, scripts, archives, PDF
   - NUL bytes and high-entropy (encrypted/compressed) payloads

2. Malware scan (MalwareScanner) through a pluggable provider:
   - ``signature``: built-in matcher (EICAR test string, dropper markers)
   - ``http``: remote scanning service, multipart POST via httpx

NEVER trust file extensions or Content-Type headers alone: the sniffed
type must agree with them.
"""

import asyncio
import hashlib
import logging
import math
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from bulkorder.config import settings
from bulkorder.core.errors import SecurityError
from bulkorder.schemas.security import FindingCategory, SecurityFinding, Severity, Stage
from bulkorder.schemas.upload import BulkOrderRequest

logger = logging.getLogger(__name__)

DEEP_SCAN_BYTES = 100 * 1024

# (name, header signature, severity). Checked against the start of the payload.
_MAGIC_SIGNATURES: List[tuple[str, bytes, Severity]] = [
    ("windows_executable", b"MZ", Severity.CRITICAL),
    ("elf_executable", b"\x7fELF", Severity.CRITICAL),
    ("macho_executable", b"\xcf\xfa\xed\xfe", Severity.CRITICAL),
    ("macho_executable", b"\xfe\xed\xfa\xce", Severity.CRITICAL),
    ("java_class", b"\xca\xfe\xba\xbe", Severity.HIGH),
    ("zip_archive", b"PK\x03\x04", Severity.HIGH),
    ("rar_archive", b"Rar!\x1a\x07", Severity.HIGH),
    ("7z_archive", b"7z\xbc\xaf\x27\x1c", Severity.HIGH),
    ("gzip_archive", b"\x1f\x8b", Severity.HIGH),
    ("ole2_document", b"\xd0\xcf\x11\xe0", Severity.MEDIUM),
    ("pdf_document", b"%PDF", Severity.MEDIUM),
    ("shebang_script", b"#!", Severity.HIGH),
]

# Embedded markers searched within the first DEEP_SCAN_BYTES.
_DANGEROUS_PATTERNS: List[tuple[str, re.Pattern]] = [
    ("php_script", re.compile(rb"<\?php", re.IGNORECASE)),
    ("html_script", re.compile(rb"<script[\s>]", re.IGNORECASE)),
    ("vbscript", re.compile(rb"(createobject|wscript\.shell)", re.IGNORECASE)),
    ("powershell_encoded", re.compile(rb"powershell(\.exe)?\s+-(e|enc|encodedcommand)\s", re.IGNORECASE)),
]


def shannon_entropy(data: bytes) -> float:
    """Bits per byte, 0.0 for empty input."""
    if not data:
        return 0.0
    total = len(data)
    return -sum((n / total) * math.log2(n / total) for n in Counter(data).values())


def sniff_text_mime(header: bytes) -> Optional[str]:
    """Return text/csv or text/plain for UTF-8 text, None for anything else."""
    try:
        text = header[:4096].decode("utf-8")
    except UnicodeDecodeError:
        # A multi-byte sequence may be cut at the boundary
        try:
            text = header[:4093].decode("utf-8")
        except UnicodeDecodeError:
            return None
    lines = text.lstrip("\ufeff").strip().splitlines()
    if lines and "," in lines[0]:
        return "text/csv"
    return "text/plain"


@dataclass
class ScanReport:
    safe: bool
    threats: List[SecurityFinding] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Stage 1: structural scan
# ---------------------------------------------------------------------------

class FileScanner:
    def __init__(
        self,
        max_bytes: int = 5 * 1024 * 1024,
        allowed_extensions: Optional[List[str]] = None,
        allowed_mime_types: Optional[List[str]] = None,
        entropy_threshold: float = 7.5,
    ):
        self.max_bytes = max_bytes
        self.allowed_extensions = set(allowed_extensions or [".csv", ".txt"])
        self.allowed_mime_types = set(allowed_mime_types or ["text/csv", "text/plain"])
        self.entropy_threshold = entropy_threshold

    def scan(self, upload: BulkOrderRequest) -> ScanReport:
        content = upload.content
        header = content[:DEEP_SCAN_BYTES]
        declared = (upload.client.declared_mime or "").split(";")[0].strip().lower() or None
        detected = sniff_text_mime(header)
        metadata = {
            "filename": upload.client.filename,
            "size": upload.size,
            "extension": upload.extension,
            "declared_mime": declared,
            "detected_mime": detected,
            "sha256": hashlib.sha256(content).hexdigest(),
            "magic": content[:8].hex(),
        }
        threats: List[SecurityFinding] = []

        def policy(description: str, severity: Severity = Severity.MEDIUM, pattern: Optional[str] = None) -> None:
            threats.append(SecurityFinding(
                category=FindingCategory.POLICY,
                severity=severity,
                description=description,
                stage=Stage.FILE_SCAN,
                pattern=pattern,
            ))

        if upload.size > self.max_bytes:
            policy(f"File size {upload.size} exceeds limit {self.max_bytes}", pattern="oversized")

        if upload.extension not in self.allowed_extensions:
            policy(f"File extension {upload.extension or '(none)'} is not allowed", pattern="invalid_extension")

        if declared and declared not in self.allowed_mime_types:
            policy(f"Declared content type {declared} is not allowed", pattern="invalid_mime")

        for name, signature, severity in _MAGIC_SIGNATURES:
            if content.startswith(signature):
                threats.append(SecurityFinding(
                    category=FindingCategory.MALWARE if severity == Severity.CRITICAL else FindingCategory.POLICY,
                    severity=severity,
                    description=f"File signature indicates {name.replace('_', ' ')}",
                    stage=Stage.FILE_SCAN,
                    pattern=name,
                ))
                break

        for name, pattern in _DANGEROUS_PATTERNS:
            if pattern.search(header):
                threats.append(SecurityFinding(
                    category=FindingCategory.MALWARE,
                    severity=Severity.HIGH,
                    description=f"Embedded {name.replace('_', ' ')} detected",
                    stage=Stage.FILE_SCAN,
                    pattern=name,
                ))

        if b"\x00" in header:
            policy("Binary content (NUL bytes) detected", Severity.HIGH, pattern="binary_content")
        elif detected is None:
            policy("Content is not valid UTF-8 text", pattern="signature_mismatch")

        entropy = shannon_entropy(header)
        metadata["entropy"] = round(entropy, 3)
        if entropy > self.entropy_threshold:
            policy(f"High entropy ({entropy:.2f} bits/byte) suggests encrypted content", pattern="encrypted")

        report = ScanReport(safe=not threats, threats=threats, metadata=metadata)
        if threats:
            logger.warning(
                "SECURITY_AUDIT: file_scan_rejected",
                extra={"file": upload.client.filename, "sha256": metadata["sha256"], "threats": len(threats)},
            )
        return report


# ---------------------------------------------------------------------------
# Stage 2: malware scan providers
# ---------------------------------------------------------------------------

@dataclass
class MalwareThreat:
    name: str
    severity: Severity = Severity.CRITICAL
    action: str = "blocked"


@dataclass
class MalwareScanResult:
    clean: bool
    infected: bool
    provider: str
    threats: List[MalwareThreat] = field(default_factory=list)
    scan_duration_ms: float = 0.0


class MalwareScanProvider(Protocol):
    name: str

    async def scan(self, content: bytes, filename: str) -> MalwareScanResult: ...


EICAR_SIGNATURE = rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class SignatureScanProvider:
    """In-process matcher for well-known test and dropper signatures."""

    name = "signature"

    _SIGNATURES: List[tuple[str, re.Pattern, Severity]] = [
        ("EICAR-Test-File", re.compile(re.escape(EICAR_SIGNATURE)), Severity.CRITICAL),
        ("Dropper.PowerShell.DownloadString", re.compile(rb"downloadstring\s*\(", re.IGNORECASE), Severity.HIGH),
        ("Dropper.Certutil.Decode", re.compile(rb"certutil(\.exe)?\s+-(decode|urlcache)", re.IGNORECASE), Severity.HIGH),
        ("Webshell.Eval.Base64", re.compile(rb"eval\s*\(\s*base64_decode\s*\(", re.IGNORECASE), Severity.CRITICAL),
    ]

    async def scan(self, content: bytes, filename: str) -> MalwareScanResult:
        start = time.perf_counter()
        threats = [
            MalwareThreat(name=name, severity=severity)
            for name, pattern, severity in self._SIGNATURES
            if pattern.search(content)
        ]
        return MalwareScanResult(
            clean=not threats,
            infected=bool(threats),
            provider=self.name,
            threats=threats,
            scan_duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )


class HttpScanProvider:
    """Remote scanner. Expects ``{"infected": bool, "threats": [{"name", "severity"}]}``."""

    name = "http"

    def __init__(self, url: str, api_key: Optional[str] = None, timeout_s: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s, connect=5.0))
        return self._client

    async def scan(self, content: bytes, filename: str) -> MalwareScanResult:
        start = time.perf_counter()
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        response = await self._get_client().post(
            self.url,
            files={"file": (filename, content, "application/octet-stream")},
            headers=headers,
        )
        response.raise_for_status()
        data = response.json()
        threats = [
            MalwareThreat(name=t.get("name", "unknown"), severity=Severity(t.get("severity", "critical")))
            for t in data.get("threats", [])
        ]
        infected = bool(data.get("infected")) or bool(threats)
        return MalwareScanResult(
            clean=not infected,
            infected=infected,
            provider=self.name,
            threats=threats,
            scan_duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class MalwareScanner:
    """Fail-closed wrapper: provider errors and timeouts reject the upload."""

    def __init__(self, provider: MalwareScanProvider, timeout_s: float = 30.0, max_bytes: int = 25 * 1024 * 1024):
        self.provider = provider
        self.timeout_s = timeout_s
        self.max_bytes = max_bytes

    async def scan(self, upload: BulkOrderRequest) -> MalwareScanResult:
        if upload.size > self.max_bytes:
            logger.warning("File %s too large for malware scan (%d bytes)", upload.client.filename, upload.size)
            return MalwareScanResult(clean=False, infected=False, provider=self.provider.name)
        try:
            return await asyncio.wait_for(
                self.provider.scan(upload.content, upload.client.filename),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            raise SecurityError(
                "BLK-SEC-004",
                detail=f"{self.provider.name} scan timed out after {self.timeout_s}s",
            )
        except Exception as exc:
            raise SecurityError("BLK-SEC-004", detail=f"{self.provider.name} scan failed: {exc}") from exc


def result_findings(result: MalwareScanResult) -> List[SecurityFinding]:
    if result.infected:
        return [
            SecurityFinding(
                category=FindingCategory.MALWARE,
                severity=threat.severity,
                description=f"Malware detected: {threat.name}",
                stage=Stage.MALWARE_SCAN,
                pattern=threat.name,
            )
            for threat in result.threats
        ] or [SecurityFinding(FindingCategory.MALWARE, Severity.CRITICAL, "Malware detected", Stage.MALWARE_SCAN)]
    if not result.clean:
        return [SecurityFinding(
            FindingCategory.POLICY,
            Severity.HIGH,
            "File could not be verified as clean",
            Stage.MALWARE_SCAN,
            pattern="unverified",
        )]
    return []


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class ContentSecurityScanner:
    """Runs the structural stage, then the malware stage."""

    def __init__(self, file_scanner: FileScanner, malware_scanner: MalwareScanner):
        self.file_scanner = file_scanner
        self.malware_scanner = malware_scanner

    def structural_scan(self, upload: BulkOrderRequest) -> ScanReport:
        return self.file_scanner.scan(upload)

    async def malware_scan(self, upload: BulkOrderRequest) -> ScanReport:
        result = await self.malware_scanner.scan(upload)
        findings = result_findings(result)
        return ScanReport(
            safe=result.clean and not findings,
            threats=findings,
            metadata={
                "provider": result.provider,
                "infected": result.infected,
                "scan_duration_ms": result.scan_duration_ms,
            },
        )

    async def scan(self, upload: BulkOrderRequest) -> ScanReport:
        structural = self.structural_scan(upload)
        if not structural.safe:
            return structural
        malware = await self.malware_scan(upload)
        return ScanReport(
            safe=malware.safe,
            threats=malware.threats,
            metadata={**structural.metadata, "malware": malware.metadata},
        )


def build_content_scanner() -> ContentSecurityScanner:
    if settings.malware_provider == "http":
        if not settings.malware_scan_url:
            raise ValueError("BULKORDER_MALWARE_SCAN_URL is required when malware_provider=http")
        provider: MalwareScanProvider = HttpScanProvider(
            settings.malware_scan_url,
            api_key=settings.malware_scan_api_key,
            timeout_s=settings.malware_scan_timeout_s,
        )
    else:
        provider = SignatureScanProvider()
    return ContentSecurityScanner(
        FileScanner(
            max_bytes=settings.max_upload_bytes,
            allowed_extensions=settings.allowed_extensions,
            allowed_mime_types=settings.allowed_mime_types,
            entropy_threshold=settings.entropy_threshold,
        ),
        MalwareScanner(provider, timeout_s=settings.malware_scan_timeout_s, max_bytes=settings.malware_max_bytes),
    )

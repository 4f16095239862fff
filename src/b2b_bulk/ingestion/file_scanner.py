"""Upload-level content scanning ahead of parsing."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import PurePath
from typing import Protocol

from b2b_bulk.ingestion.threats import HIGH_ENTROPY_BITS, shannon_entropy

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_MIME_TYPES = frozenset(
    {"text/csv", "text/plain", "application/csv", "application/vnd.ms-excel"}
)

_EICAR = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"

# (prefix, detected type, threat label)
_MAGIC_SIGNATURES: tuple[tuple[bytes, str, str], ...] = (
    (b"MZ", "application/x-msdownload", "executable"),
    (b"\x7fELF", "application/x-elf", "executable"),
    (b"\xca\xfe\xba\xbe", "application/x-mach-binary", "executable"),
    (b"PK\x03\x04", "application/zip", "archive"),
    (b"Rar!\x1a\x07", "application/vnd.rar", "archive"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed", "archive"),
    (b"\x1f\x8b", "application/gzip", "archive"),
    (b"%PDF", "application/pdf", "document"),
    (b"#!", "text/x-shellscript", "script"),
)

_EMBEDDED_SCRIPT_PATTERNS = (
    re.compile(rb"<\?php", re.IGNORECASE),
    re.compile(rb"<\s*script\b", re.IGNORECASE),
    re.compile(rb"<%\s*@?\s*(?:page|eval)", re.IGNORECASE),
)

_SCAN_WINDOW = 64 * 1024
_MIN_ENTROPY_SAMPLE = 256
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_MAX_FILENAME_LENGTH = 255


@dataclass(frozen=True)
class VirusScanResult:
    clean: bool
    signature: str | None = None
    engine: str | None = None


class VirusScanner(Protocol):
    """Pluggable malware scanning capability (local daemon, cloud API, ...)."""

    async def scan(self, data: bytes, filename: str) -> VirusScanResult: ...


@dataclass(frozen=True)
class FileScanResult:
    safe: bool
    sanitized_filename: str
    size: int
    threats: tuple[str, ...] = ()
    size_exceeded: bool = False
    detected_type: str | None = None
    entropy: float = 0.0
    warnings: tuple[str, ...] = ()


class FileScanner:
    """Static checks on an uploaded file: size, type, signatures, entropy."""

    def __init__(
        self,
        *,
        max_bytes: int,
        allowed_extensions: tuple[str, ...] = (".csv", ".txt"),
        allowed_mime_types: frozenset[str] = DEFAULT_ALLOWED_MIME_TYPES,
        entropy_threshold: float = HIGH_ENTROPY_BITS,
    ) -> None:
        self._max_bytes = max_bytes
        self._allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)
        self._allowed_mime_types = allowed_mime_types
        self._entropy_threshold = entropy_threshold

    def scan(self, data: bytes, filename: str, mime_type: str | None = None) -> FileScanResult:
        safe_name = sanitize_filename(filename)
        threats: list[str] = []
        warnings: list[str] = []

        if len(data) > self._max_bytes:
            logger.info("Upload rejected: %d bytes exceeds %d", len(data), self._max_bytes)
            return FileScanResult(
                safe=False,
                sanitized_filename=safe_name,
                size=len(data),
                threats=(f"File size {len(data)} exceeds maximum of {self._max_bytes} bytes",),
                size_exceeded=True,
            )
        if not data:
            return FileScanResult(
                safe=False, sanitized_filename=safe_name, size=0, threats=("File is empty",)
            )

        extension = PurePath(safe_name).suffix.lower()
        if extension not in self._allowed_extensions:
            threats.append(f"File extension not allowed: {extension or '(none)'}")

        declared = (mime_type or "").split(";")[0].strip().lower()
        if declared and declared not in self._allowed_mime_types:
            threats.append(f"MIME type not allowed: {declared}")

        head = data[:_SCAN_WINDOW]
        detected_type = None
        for prefix, kind, label in _MAGIC_SIGNATURES:
            if head.startswith(prefix):
                detected_type = kind
                threats.append(f"Disallowed content signature: {label} ({kind})")
                break

        if _EICAR in head:
            threats.append("Antivirus test signature (EICAR) detected")
        for pattern in _EMBEDDED_SCRIPT_PATTERNS:
            if pattern.search(head):
                threats.append("Embedded script content detected")
                break
        if b"\x00" in head:
            threats.append("Binary content (NUL bytes) in text upload")

        if detected_type and declared.startswith("text/"):
            warnings.append(f"Declared {declared} but content looks like {detected_type}")

        entropy = shannon_entropy(head)
        if len(head) >= _MIN_ENTROPY_SAMPLE and entropy > self._entropy_threshold:
            threats.append(f"High-entropy content ({entropy:.2f} bits/byte); possibly encrypted")

        if threats:
            logger.warning("Upload %s failed content scan: %s", safe_name, "; ".join(threats))
        return FileScanResult(
            safe=not threats,
            sanitized_filename=safe_name,
            size=len(data),
            threats=tuple(threats),
            detected_type=detected_type,
            entropy=round(entropy, 3),
            warnings=tuple(warnings),
        )


def sanitize_filename(filename: str) -> str:
    """Basename only, ASCII-safe characters, no leading dots."""
    name = PurePath(filename.replace("\\", "/")).name
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
    if len(name) > _MAX_FILENAME_LENGTH:
        stem, dot, suffix = name.rpartition(".")
        if dot and len(suffix) <= 10:
            name = stem[: _MAX_FILENAME_LENGTH - len(suffix) - 1] + "." + suffix
        else:
            name = name[:_MAX_FILENAME_LENGTH]
    return name or "upload"

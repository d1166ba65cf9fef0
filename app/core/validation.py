"""Upload validation rules and the ``validate_upload`` collaborator."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

import magic

logger = logging.getLogger(__name__)

# Allowed file extensions
ALLOWED_EXTENSIONS: set[str] = {".pdf", ".txt", ".md"}

MAX_FILENAME_LENGTH: int = 255

# MIME types a client may declare for an upload
ALLOWED_DECLARED_MIME_TYPES: set[str] = {
    "application/pdf",
    "application/octet-stream",
    "text/plain",
    "text/markdown",
}

# MIME type expected from content sniffing, per extension
MIME_MAPPING: dict[str, set[str]] = {
    ".pdf": {"application/pdf"},
    ".txt": {"text/plain"},
    ".md": {"text/plain", "text/markdown", "text/x-markdown"},
}

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {units[idx]}"


def validate_upload(
    filename: str | None,
    content: bytes | None,
    declared_mime: str | None,
    max_file_size: int,
) -> ValidationResult:
    """Check an uploaded document against name, size, extension and content-type rules.

    Never raises: every rejection is reported through ``ValidationResult.reason``.
    """
    if content is None or filename is None:
        return ValidationResult(False, "No file was uploaded")

    if not filename.strip():
        return ValidationResult(False, "File name must not be empty")
    if len(filename) > MAX_FILENAME_LENGTH:
        return ValidationResult(False, "File name is too long")
    if INVALID_FILENAME_CHARS.search(filename):
        return ValidationResult(False, "File name contains invalid characters")

    size = len(content)
    if size == 0:
        return ValidationResult(False, f"File '{filename}' is empty")
    if size > max_file_size:
        return ValidationResult(False, f"File exceeds the size limit (max {format_file_size(max_file_size)})")

    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        return ValidationResult(
            False,
            f"Unsupported file format, allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
        )

    if declared_mime and declared_mime not in ALLOWED_DECLARED_MIME_TYPES:
        return ValidationResult(False, f"Unsupported file type: {declared_mime}")

    try:
        sniffed = magic.from_buffer(content, mime=True)
    except Exception as e:
        logger.error("MIME detection failed for %s: %s", filename, e)
        return ValidationResult(False, f"Could not determine the content type of '{filename}'")

    if sniffed not in MIME_MAPPING[ext]:
        logger.warning("Rejected %s: content type %s does not match extension %s", filename, sniffed, ext)
        return ValidationResult(
            False,
            f"Content of '{filename}' (detected: {sniffed}) does not match its extension '{ext}'",
        )

    return ValidationResult(True, "File is valid")

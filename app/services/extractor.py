import asyncio
import io
import logging
from pathlib import Path

import pdfplumber

from app.core.exceptions import ExtractionError
from app.models.pipeline_models import ExtractedDocument
from app.models.pipeline_models import UploadedDocument

# Configure module logger
logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[TEXT TRUNCATED AT LENGTH LIMIT]"
TEXT_ENCODINGS = ("utf-8-sig", "latin-1")


def _sync_pdf_extraction(file_bytes: bytes, fname: str, request_id: str) -> tuple[str, int]:
    """Return ``(text, page_count)``. Runs in a worker thread."""
    buffer = io.BytesIO(file_bytes)
    with pdfplumber.open(buffer) as pdf:
        page_texts = []
        for page in pdf.pages:
            text_content = page.extract_text()
            if text_content is not None:
                page_texts.append(text_content)
        text = "\n".join(page_texts)
        logger.debug("[%s] PDF: pdfplumber extracted %d chars from %d pages of '%s'", request_id, len(text), len(pdf.pages), fname)
        return text, len(pdf.pages)


async def _pdf_to_text(file_bytes: bytes, fname: str, request_id: str) -> tuple[str, int]:
    try:
        return await asyncio.to_thread(_sync_pdf_extraction, file_bytes, fname, request_id)
    except Exception as e:
        logger.error("[%s] PDF: Failed to extract text from '%s': %s", request_id, fname, str(e))
        raise ExtractionError(f"Failed to extract text from PDF: {fname}") from e


def _decode_text(file_bytes: bytes, fname: str) -> str:
    # latin-1 accepts any byte sequence, so the loop always returns
    for encoding in TEXT_ENCODINGS:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ExtractionError(f"Could not decode text file: {fname}")


async def extract(document: UploadedDocument, request_id: str, max_prompt_chars: int | None = None) -> ExtractedDocument:
    """Extract the text of an uploaded document based on its extension.

    PDFs are read with pdfplumber; ``.txt`` and ``.md`` files are decoded and
    count as a single page. When ``max_prompt_chars`` is given the text is
    truncated with :func:`guard_corpus`.

    Raises:
        ExtractionError: The format is unsupported, the file is unreadable, or
            no text could be extracted.
    """
    fname = document.file_name
    ext = Path(fname).suffix.lower()
    logger.info("[%s] EXTRACT: Starting extraction for file: '%s' (type: %s)", request_id, fname, ext or "none")

    if ext == ".pdf":
        text, page_count = await _pdf_to_text(document.content, fname, request_id)
    elif ext in {".txt", ".md"}:
        text, page_count = _decode_text(document.content, fname), 1
    else:
        logger.warning("[%s] EXTRACT: Unsupported file type '%s' for file '%s'.", request_id, ext, fname)
        raise ExtractionError(f"Unsupported file type: '{ext}' for file '{fname}'")

    if not text.strip():
        logger.error("[%s] EXTRACT: No text found in '%s'", request_id, fname)
        raise ExtractionError(f"No text could be extracted from '{fname}'")

    if max_prompt_chars is not None:
        text = guard_corpus(text, request_id, max_prompt_chars)

    logger.info("[%s] EXTRACT: Processed '%s': %d pages, %d chars", request_id, fname, page_count, len(text))
    return ExtractedDocument(
        text=text,
        page_count=page_count,
        file_size=len(document.content),
        file_name=fname,
    )


def guard_corpus(corpus: str, request_id: str, max_chars: int) -> str:
    """Ensure corpus doesn't exceed maximum length."""
    original_len = len(corpus)

    if original_len > max_chars:
        logger.warning(
            "[%s] CORPUS_GUARD: Corpus exceeds max length (%d > %d), truncating",
            request_id,
            original_len,
            max_chars,
        )
        return corpus[:max_chars] + TRUNCATION_MARKER

    logger.debug("[%s] CORPUS_GUARD: Corpus length OK: %d chars", request_id, original_len)
    return corpus

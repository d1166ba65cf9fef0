"""Reads and validates an uploaded document before any stage runs.

The primary entry point is `_read_and_validate_upload`, used by the workflow
route. It returns an `UploadedDocument`; text extraction happens later, inside
the pipeline's first stage.
"""

import asyncio
import logging

from fastapi import UploadFile

from app.core.exceptions import ValidationError
from app.core.validation import validate_upload
from app.models.pipeline_models import UploadedDocument

__all__ = [
    "_read_and_validate_upload",
]

logger = logging.getLogger(__name__)


async def _read_and_validate_upload(upload: UploadFile | None, request_id: str, max_file_size: int) -> UploadedDocument:
    """Read the upload into memory and check it with `validate_upload`.

    Raises:
        ValidationError: The upload is missing, unreadable or rejected by the rules.
    """
    if upload is None:
        logger.warning("[%s] Request without an uploaded file", request_id)
        raise ValidationError("No file uploaded")

    filename = upload.filename
    try:
        await upload.seek(0)
        contents = await upload.read()
    except Exception as e:
        logger.error("[%s] Failed to read file content for %s: %s", request_id, filename, e, exc_info=True)
        raise ValidationError(f"Could not read '{filename}'") from e

    result = await asyncio.to_thread(validate_upload, filename, contents, upload.content_type, max_file_size)
    if not result.valid:
        logger.warning("[%s] Rejected upload %s: %s", request_id, filename, result.reason)
        raise ValidationError(result.reason)

    logger.debug("[%s] File validation successful: %s (%d bytes)", request_id, filename, len(contents))
    return UploadedDocument(file_name=filename, content=contents, content_type=upload.content_type)

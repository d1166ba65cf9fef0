"""Progressive replay of already generated text as ``chunk`` events.

Used when stages call the upstream in one shot (``stream_generation=False``) so
that clients still receive output incrementally.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from app.core.cancellation import CancellationToken
from app.core.cancellation import run_cancellable
from app.models.stream_events import ChunkEvent

if TYPE_CHECKING:
    from app.generation_logic.stream_orchestrator import EventSink

logger = logging.getLogger(__name__)


def _windows(text: str, chunk_size: int) -> list[str]:
    """Split ``text`` into windows of at most ``chunk_size`` characters, line by line.

    Each line break is emitted as its own window, so the windows concatenate
    back to ``text`` exactly.
    """
    windows: list[str] = []
    lines = text.split("\n")
    for idx, line in enumerate(lines):
        for start in range(0, len(line), chunk_size):
            windows.append(line[start : start + chunk_size])
        if idx < len(lines) - 1:
            windows.append("\n")
    return windows


async def replay_text(
    text: str,
    sink: "EventSink",
    chunk_size: int,
    delay: float,
    token: CancellationToken | None = None,
    stage: str | None = None,
) -> str:
    """Emit ``text`` to ``sink`` as ``chunk`` events, pausing ``delay`` seconds between windows.

    Returns the replayed text. Raises ``Cancelled`` as soon as ``token`` fires,
    including while sleeping.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    accumulated = ""
    windows = _windows(text, chunk_size)
    for idx, window in enumerate(windows):
        if token is not None:
            token.raise_if_cancelled()
        accumulated += window
        await sink.accept(ChunkEvent(text=window, accumulated_text=accumulated, stage=stage))
        if delay > 0 and idx < len(windows) - 1:
            await run_cancellable(asyncio.sleep(delay), token)

    logger.debug("Replayed %d chars in %d windows", len(accumulated), len(windows))
    return accumulated

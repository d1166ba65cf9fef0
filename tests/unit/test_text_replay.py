import pytest

from app.core.cancellation import CancellationToken
from app.core.exceptions import Cancelled
from app.generation_logic.text_replay import replay_text


@pytest.mark.asyncio
async def test_replay_emits_windows_that_rebuild_the_text(event_sink):
    text = "first line is long\nsecond\n\nend"

    result = await replay_text(text, event_sink, chunk_size=5, delay=0, stage="GenerateTestCases")

    chunks = event_sink.of_type("chunk")
    assert result == text
    assert "".join(c.text for c in chunks) == text
    assert chunks[-1].accumulated_text == text
    assert all(len(c.text) <= 5 for c in chunks)
    assert all(c.stage == "GenerateTestCases" for c in chunks)
    # Line breaks travel as their own windows
    assert [c.text for c in chunks].count("\n") == 3


@pytest.mark.asyncio
async def test_replay_accumulates_monotonically(event_sink):
    await replay_text("abcdefgh", event_sink, chunk_size=3, delay=0)

    assert [c.accumulated_text for c in event_sink.of_type("chunk")] == ["abc", "abcdef", "abcdefgh"]


@pytest.mark.asyncio
async def test_replay_empty_text_emits_nothing(event_sink):
    assert await replay_text("", event_sink, chunk_size=3, delay=0) == ""
    assert event_sink.events == []


@pytest.mark.asyncio
async def test_replay_rejects_non_positive_chunk_size(event_sink):
    with pytest.raises(ValueError):
        await replay_text("abc", event_sink, chunk_size=0, delay=0)


@pytest.mark.asyncio
async def test_replay_stops_when_cancelled_during_delay(event_sink):
    token = CancellationToken()
    token.cancel_after(0.05)

    with pytest.raises(Cancelled):
        await replay_text("a" * 100, event_sink, chunk_size=1, delay=0.02, token=token)

    assert 0 < len(event_sink.events) < 100


@pytest.mark.asyncio
async def test_replay_with_cancelled_token_emits_nothing(event_sink):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(Cancelled):
        await replay_text("abc", event_sink, chunk_size=1, delay=0, token=token)
    assert event_sink.events == []

import asyncio

import pytest

from agentwire.engine.aggregator import OutputAggregator


class _Sink:
    def __init__(self) -> None:
        self.chunks: list[str] = []

    async def __call__(self, text: str) -> None:
        self.chunks.append(text)


@pytest.mark.asyncio
async def test_push_with_newline_is_forwarded_immediately() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0)

    await agg.push("hello\n")

    assert sink.chunks == ["hello\n"]


@pytest.mark.asyncio
async def test_push_without_newline_is_coalesced_after_delay() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=0.05)

    await agg.push("a")
    await agg.push("b")
    await agg.push("c")
    assert sink.chunks == []
    assert agg.buffered == "abc"

    await asyncio.sleep(0.2)

    assert sink.chunks == ["abc"]


@pytest.mark.asyncio
async def test_newline_flushes_pending_raw_text_with_it() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0)

    await agg.push("par")
    await agg.push("tial\n")

    assert sink.chunks == ["partial\n"]


@pytest.mark.asyncio
async def test_commit_flushes_when_no_partial_line_pending() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0, threshold=100)

    agg.add_content("line one\n")
    agg.add_content("line two\n")
    assert sink.chunks == []

    await agg.commit(has_partial=False)

    assert sink.chunks == ["line one\nline two\n"]


@pytest.mark.asyncio
async def test_commit_waits_for_timer_while_line_is_partial() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=0.05, threshold=100)

    agg.add_content("short\n")
    await agg.commit(has_partial=True)
    assert sink.chunks == []

    await asyncio.sleep(0.2)

    assert sink.chunks == ["short\n"]


@pytest.mark.asyncio
async def test_commit_flushes_over_threshold_even_with_partial_line() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0, threshold=10)

    agg.add_content("x" * 20 + "\n")
    await agg.commit(has_partial=True)

    assert sink.chunks == ["x" * 20 + "\n"]


@pytest.mark.asyncio
async def test_finalize_flushes_residue_and_returns_full_response() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0)

    await agg.push("first\n")
    await agg.push("tail")

    response = await agg.finalize()

    assert sink.chunks == ["first\n", "tail"]
    assert response == "".join(sink.chunks)
    assert await agg.finalize() == response
    assert agg.flush_count == 2


@pytest.mark.asyncio
async def test_line_content_is_emitted_before_raw_text() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink, delay=10.0)

    await agg.push("raw")
    agg.add_content("line\n")
    await agg.flush()

    assert sink.chunks == ["line\nraw"]


@pytest.mark.asyncio
async def test_input_after_finalize_is_rejected() -> None:
    agg = OutputAggregator(_Sink())
    await agg.finalize()

    with pytest.raises(RuntimeError):
        await agg.push("late\n")
    with pytest.raises(RuntimeError):
        agg.add_content("late\n")


@pytest.mark.asyncio
async def test_empty_flush_sends_nothing() -> None:
    sink = _Sink()
    agg = OutputAggregator(sink)

    await agg.flush()
    await agg.commit(has_partial=False)

    assert sink.chunks == []
    assert await agg.finalize() == ""

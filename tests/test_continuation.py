#!/usr/bin/env python3
"""
Streaming Continuation Tests
==============================
Watchdog timing, text stitching and the continuation coordinator, driven by
scripted in-memory streams. Stalls use a tiny watchdog threshold so the
whole module runs in well under a second.

Zero LLM calls, zero network.
"""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from fakes import FakeGateway
from toolhire import config
from toolhire.consultation_engine import generate_advisor_response_stream
from toolhire.continuation import (
    CONTINUING_MESSAGE,
    ContinuationCoordinator,
    ContinuationExhausted,
    Stitcher,
    TransportInterrupted,
    Watchdog,
    overlap_length,
    stitch,
    watch,
)
from toolhire.gateway import UpstreamError, set_gateway
from toolhire.models import AdvisorRequest, PartialResponse, Phase, StreamChunk

STALL = object()
THRESHOLD = 0.05


def scripted(*scripts):
    """Build an open_stream callable that plays one script per call.

    Returns (open_stream, partials, closed): the partial each call received
    and, per call, whether its stream was closed.
    """
    partials: list[PartialResponse | None] = []
    closed: list[bool] = []

    async def open_stream(partial):
        index = len(partials)
        partials.append(partial)
        closed.append(False)
        try:
            for item in scripts[index]:
                if item is STALL:
                    await asyncio.sleep(10)
                elif isinstance(item, Exception):
                    raise item
                else:
                    yield item
        finally:
            closed[index] = True

    return open_stream, partials, closed


async def collect(coordinator, partial=None):
    return [event async for event in coordinator.run(partial)]


def chunk(text):
    return StreamChunk(chunk=text)


# ── Watchdog ────────────────────────────────────────────────────────────

def test_watchdog_disarmed_has_no_deadline():
    print("\n── Watchdog ──")
    dog = Watchdog(threshold=5.0, phase=Phase.GATHERING)
    assert dog.remaining() is None
    assert not dog.expired()


def test_watchdog_arm_and_feed():
    dog = Watchdog(threshold=5.0, phase=Phase.RECOMMENDATION)
    dog.arm()
    assert 4.0 < dog.remaining() <= 5.0

    dog.feed("Hello ")
    dog.feed("world")
    assert dog.accumulated_text == "Hello world"
    assert dog.snapshot() == PartialResponse(text="Hello world", phase=Phase.RECOMMENDATION)

    dog.disarm()
    assert dog.remaining() is None


def test_watchdog_budget_caps_deadline():
    dog = Watchdog(threshold=5.0, phase=Phase.GATHERING, budget=1.0)
    dog.arm()
    assert dog.remaining() <= 1.0
    # Progress resets the stall timer but never extends the budget
    dog.feed("x")
    assert dog.remaining() <= 1.0


def test_watchdog_expires():
    dog = Watchdog(threshold=0.01, phase=Phase.GATHERING)
    dog.arm()
    time.sleep(0.02)
    assert dog.expired()


def test_watch_raises_on_stall():
    async def slow():
        yield "first"
        await asyncio.sleep(10)
        yield "never"

    async def run():
        dog = Watchdog(threshold=THRESHOLD, phase=Phase.GATHERING)
        dog.arm()
        seen = []
        with pytest.raises(TransportInterrupted):
            async for item in watch(slow(), dog):
                seen.append(item)
        return seen

    assert asyncio.run(run()) == ["first"]


def test_watch_stops_once_deadline_has_passed():
    started = []

    async def never_read():
        started.append(True)
        yield "late"

    async def run():
        dog = Watchdog(threshold=None, phase=Phase.RECOMMENDATION, budget=0.01)
        dog.arm()
        await asyncio.sleep(0.02)
        with pytest.raises(TransportInterrupted):
            async for _ in watch(never_read(), dog):
                pass

    asyncio.run(run())
    assert started == []


# ── Stitching ───────────────────────────────────────────────────────────

def test_stitch_is_plain_concatenation_by_default():
    print("\n── Stitching ──")
    assert stitch("The deck needs ", "a circular saw.") == "The deck needs a circular saw."
    # Without trimming, a repeated run is kept as-is
    assert stitch("abc", "abcdef") == "abcabcdef"


def test_overlap_trim():
    previous = "Recommended tools:\n1. Circular saw for cutting the joists to length."
    repeated = "cutting the joists to length."
    continuation = repeated + "\n2. Impact driver."

    assert overlap_length(previous, continuation, min_overlap=10) == len(repeated)
    assert stitch(previous, continuation, trim_overlap=True, min_overlap=10) == (
        previous + "\n2. Impact driver."
    )


def test_short_overlap_is_not_trimmed():
    # A repeated single space is ordinary text, not a duplicated run
    assert overlap_length("one ", " two", min_overlap=24) == 0
    assert stitch("one ", " two", trim_overlap=True, min_overlap=24) == "one  two"


def test_stitcher_passthrough():
    stitcher = Stitcher("Partial ")
    assert stitcher.feed("text") == "text"
    assert stitcher.flush() == ""
    assert stitcher.text == "Partial text"


def test_stitcher_trims_across_fragments():
    previous = "x" * 10 + "0123456789abcdefghijklmnopqrstuvwxyz"
    stitcher = Stitcher(previous, trim_overlap=True, min_overlap=24)

    out = []
    for fragment in ["0123456789", "abcdefghij", "klmnopqrstuvwxyz", " and more", " text here"]:
        out.append(stitcher.feed(fragment))
    out.append(stitcher.flush())

    assert "".join(out) == " and more text here"
    assert stitcher.text == previous + " and more text here"


def test_stitcher_releases_text_that_cannot_overlap():
    stitcher = Stitcher("a long partial response " * 5, trim_overlap=True)
    # Nothing in the partial contains " End.", so there is nothing to wait for
    assert stitcher.feed(" End.") == " End."
    assert stitcher.feed(" More.") == " More."
    assert stitcher.flush() == ""
    assert stitcher.text.endswith(" End. More.")


def test_stitcher_flush_releases_held_text():
    previous = "a long partial response " * 5
    stitcher = Stitcher(previous, trim_overlap=True)
    # Still matches the tail, so it is held until the stream ends
    assert stitcher.feed("response") == ""
    assert stitcher.flush() == "response"
    assert stitcher.text == previous + "response"


# ── Coordinator ─────────────────────────────────────────────────────────

def test_uninterrupted_generation():
    print("\n── Coordinator ──")
    open_stream, partials, closed = scripted(
        [chunk("Hello "), chunk("there"), StreamChunk(done=True, text="Hello there", is_complete=False)],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.GATHERING, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert [e for e, _ in events] == ["text", "text", "done"]
    assert events[-1][1].text == "Hello there"
    assert partials == [None]
    assert closed == [True]
    assert coordinator.partial is None
    assert coordinator.continuations == 0


def test_terminal_text_defaults_to_accumulated():
    open_stream, _, _ = scripted([chunk("ab"), chunk("cd"), StreamChunk(done=True)])
    coordinator = ContinuationCoordinator(open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))
    assert events[-1][1].text == "abcd"


def test_stall_triggers_continuation():
    first, rest = "a" * 500, "b" * 300
    open_stream, partials, closed = scripted(
        [chunk(first[:250]), chunk(first[250:]), STALL],
        [chunk(rest), StreamChunk(done=True, text=first + rest)],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    kinds = [e for e, _ in events]
    assert kinds == ["text", "text", "interrupted", "status", "text", "done"]
    assert events[3][1] == CONTINUING_MESSAGE

    # The continuation request carries exactly the text received so far
    assert partials[1] == PartialResponse(text=first, phase=Phase.RECOMMENDATION)
    assert closed == [True, True]

    final = events[-1][1]
    assert len(final.text) == 800
    assert final.text == first + rest
    assert coordinator.continuations == 1


def test_transport_abort_triggers_continuation():
    open_stream, partials, _ = scripted(
        [chunk("Tell me about "), TransportInterrupted("connection reset")],
        [chunk("your project."), StreamChunk(done=True, text="Tell me about your project.")],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.GATHERING, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert partials[1].text == "Tell me about "
    assert partials[1].phase is Phase.GATHERING
    assert events[-1][0] == "done"
    assert events[-1][1].text == "Tell me about your project."


def test_stream_without_terminal_record_is_continued():
    open_stream, partials, _ = scripted(
        [chunk("cut short")],
        [chunk(" and finished"), StreamChunk(done=True)],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.GATHERING, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert partials[1].text == "cut short"
    # No text in the terminal record: the accumulated text includes the partial
    assert events[-1][1].text == "cut short and finished"


def test_continuation_can_itself_be_continued():
    open_stream, partials, _ = scripted(
        [chunk("one "), STALL],
        [chunk("two "), STALL],
        [chunk("three"), StreamChunk(done=True, text="one two three")],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert [p.text if p else None for p in partials] == [None, "one ", "one two "]
    assert coordinator.continuations == 2
    assert "".join(d for e, d in events if e == "text") == "one two three"
    assert events[-1][1].text == "one two three"


def test_server_truncation_record_continues_from_its_text():
    open_stream, partials, _ = scripted(
        [chunk("Partial rec"), StreamChunk(done=True, interrupted=True, text="Partial rec")],
        [chunk("ommendation"), StreamChunk(done=True, text="Partial recommendation")],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert partials[1].text == "Partial rec"
    assert events[-1][1].text == "Partial recommendation"


def test_resume_from_given_partial():
    saved = PartialResponse(text="Saved so far. ", phase=Phase.RECOMMENDATION)
    open_stream, partials, _ = scripted([chunk("Rest."), StreamChunk(done=True)])
    coordinator = ContinuationCoordinator(open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator, saved))

    assert partials == [saved]
    assert events[-1][1].text == "Saved so far. Rest."


def test_continuations_are_capped():
    open_stream, partials, closed = scripted(
        [chunk("a"), STALL],
        [chunk("b"), STALL],
        [chunk("c"), STALL],
    )
    coordinator = ContinuationCoordinator(
        open_stream, Phase.RECOMMENDATION, threshold=THRESHOLD, max_continuations=2,
    )

    with pytest.raises(ContinuationExhausted) as excinfo:
        asyncio.run(collect(coordinator))

    assert isinstance(excinfo.value, UpstreamError)
    assert excinfo.value.partial.text == "abc"
    assert coordinator.partial.text == "abc"
    assert len(partials) == 3
    assert all(closed)


def test_error_record_ends_without_continuation():
    open_stream, partials, _ = scripted(
        [chunk("Some text"), StreamChunk(done=True, error=True, text="Error in streaming response: boom")],
    )
    coordinator = ContinuationCoordinator(open_stream, Phase.GATHERING, threshold=THRESHOLD)
    events = asyncio.run(collect(coordinator))

    assert events[-1] == ("error", "Error in streaming response: boom")
    assert len(partials) == 1


def test_upstream_error_propagates():
    open_stream, _, closed = scripted([UpstreamError("server returned 500")])
    coordinator = ContinuationCoordinator(open_stream, Phase.GATHERING, threshold=THRESHOLD)

    with pytest.raises(UpstreamError):
        asyncio.run(collect(coordinator))
    assert closed == [True]


def test_trimmed_continuation_keeps_watchdog_fed(monkeypatch):
    monkeypatch.setattr(config, "STITCH_TRIM_OVERLAP", True)
    previous = "a" * 270 + "TAIL-0123456789-abcdefghijklmn"
    steps = [f" step {i:03d}." for i in range(30)]
    # The model repeats the tail, then writes slowly but steadily
    set_gateway(FakeGateway(["TAIL-01234", "56789-abcd", "efghijklmn", " and then", *steps], delay=0.02))

    def open_stream(partial):
        return generate_advisor_response_stream(AdvisorRequest(
            phase="recommendation",
            project_information="Deck project",
            streaming=True,
            partial_response=partial,
        ))

    coordinator = ContinuationCoordinator(
        open_stream, Phase.RECOMMENDATION, threshold=0.3, max_continuations=0,
    )
    try:
        events = asyncio.run(collect(coordinator, PartialResponse(text=previous, phase=Phase.RECOMMENDATION)))
    finally:
        set_gateway(None)

    new_text = " and then" + "".join(steps)
    assert coordinator.continuations == 0
    assert "".join(d for e, d in events if e == "text") == new_text
    assert events[-1][1].text == previous + new_text


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))

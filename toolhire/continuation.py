"""
Tool Hire Advisor — Streaming Continuation
============================================
The hosting platform cuts off any single response after a fixed wall-clock
limit, which is shorter than a long recommendation takes to generate. This
module makes such generations look seamless to the caller:

  1. A Watchdog is armed when a stream starts and reset on every fragment.
     If no fragment arrives within the threshold (or the optional hard
     budget runs out) it fires.
  2. A watchdog firing and the transport dropping the stream are treated
     the same way: the text received so far becomes a PartialResponse.
  3. The interrupted stream is closed, and a continuation request carrying
     the PartialResponse is opened. The server stitches the new text onto
     the partial and reports the full text in its terminal record.
  4. A continuation that stalls is itself continued, up to
     MAX_CONTINUATIONS times. Past that, ContinuationExhausted is raised.

The same Watchdog also guards the server side, where it truncates a stream
that is about to overrun the platform limit (see consultation_engine).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, TypeVar

from toolhire import config
from toolhire.gateway import UpstreamError
from toolhire.models import PartialResponse, Phase, StreamChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTINUING_MESSAGE = "Continuing…"


class TransportInterrupted(Exception):
    """The stream stopped making progress or was cut off. Triggers a continuation."""


class ContinuationExhausted(UpstreamError):
    """Too many consecutive continuations; carries the latest partial text."""

    def __init__(self, message: str, partial: PartialResponse):
        super().__init__(message)
        self.partial = partial


# ===========================================================================
# Watchdog
# ===========================================================================

@dataclass
class Watchdog:
    """Progress timer for one streamed generation.

    threshold: seconds allowed between fragments (None = no stall check)
    budget:    seconds allowed for the whole stream (None = unlimited)
    """

    threshold: float | None
    phase: Phase
    budget: float | None = None
    accumulated_text: str = ""
    armed: bool = False
    deadline: float | None = None
    budget_deadline: float | None = None

    def arm(self) -> None:
        now = time.monotonic()
        self.armed = True
        self.budget_deadline = now + self.budget if self.budget else None
        self.reset(now)

    def reset(self, now: float | None = None) -> None:
        if not self.armed:
            return
        now = time.monotonic() if now is None else now
        deadline = now + self.threshold if self.threshold else None
        if self.budget_deadline is not None:
            deadline = self.budget_deadline if deadline is None else min(deadline, self.budget_deadline)
        self.deadline = deadline

    def feed(self, fragment: str) -> None:
        self.accumulated_text += fragment
        self.reset()

    def disarm(self) -> None:
        self.armed = False
        self.deadline = None

    def remaining(self) -> float | None:
        if not self.armed or self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def snapshot(self) -> PartialResponse:
        return PartialResponse(text=self.accumulated_text, phase=self.phase)


async def watch(stream: AsyncIterator[T], watchdog: Watchdog) -> AsyncIterator[T]:
    """Iterate a stream, raising TransportInterrupted when the watchdog fires first."""
    iterator = stream.__aiter__()
    while True:
        if watchdog.expired():
            raise TransportInterrupted("watchdog deadline passed before the next read")
        try:
            item = await asyncio.wait_for(iterator.__anext__(), watchdog.remaining())
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError as e:
            raise TransportInterrupted(
                f"no progress within {watchdog.threshold}s (budget {watchdog.budget}s)"
            ) from e
        yield item


async def close_stream(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


# ===========================================================================
# Stitching
# ===========================================================================

def overlap_length(previous: str, continuation: str, min_overlap: int) -> int:
    """Length of the longest tail of `previous` that `continuation` starts with.

    Overlaps shorter than min_overlap count as zero; short repeats such as a
    space or a bullet marker are usually legitimate.
    """
    longest = min(len(previous), len(continuation))
    for size in range(longest, max(min_overlap, 1) - 1, -1):
        if previous.endswith(continuation[:size]):
            return size
    return 0


def stitch(previous: str, continuation: str, trim_overlap: bool = False, min_overlap: int = 24) -> str:
    if trim_overlap and previous:
        continuation = continuation[overlap_length(previous, continuation, min_overlap):]
    return previous + continuation


class Stitcher:
    """Incrementally joins continuation fragments onto an earlier partial text.

    Without overlap trimming every fragment passes straight through. With it,
    the first fragments are held back only while they could still be the start
    of a repeated tail of the partial. They are released, minus any repeated
    prefix, as soon as they stop matching somewhere in that tail.
    """

    # Longest repeated run that will be looked for
    MAX_OVERLAP = 2000

    def __init__(self, previous: str = "", trim_overlap: bool = False, min_overlap: int = 24):
        self.previous = previous
        self.new_text = ""
        self.min_overlap = min_overlap
        self._holding = trim_overlap and bool(previous)
        self._window = min(len(previous), self.MAX_OVERLAP)
        self._tail = previous[-self._window:] if self._window else ""
        self._pending = ""

    @property
    def text(self) -> str:
        return self.previous + self.new_text + self._pending

    def feed(self, fragment: str) -> str:
        """Take one fragment; return the text that is safe to emit now."""
        if not self._holding:
            self.new_text += fragment
            return fragment
        self._pending += fragment
        if len(self._pending) < self._window and self._pending in self._tail:
            return ""
        return self._release()

    def flush(self) -> str:
        """Release anything still held back. Call at end of stream."""
        if self._holding:
            return self._release()
        return ""

    def _release(self) -> str:
        cut = overlap_length(self.previous, self._pending, self.min_overlap)
        if cut:
            logger.warning(f"[continuation] Dropped {cut} repeated characters at the stitch boundary")
        out = self._pending[cut:]
        self._holding = False
        self._pending = ""
        self.new_text += out
        return out


def new_stitcher(partial: PartialResponse | None) -> Stitcher:
    return Stitcher(
        previous=partial.text if partial else "",
        trim_overlap=config.STITCH_TRIM_OVERLAP,
        min_overlap=config.STITCH_MIN_OVERLAP,
    )


# ===========================================================================
# Coordinator
# ===========================================================================

StreamOpener = Callable[[PartialResponse | None], AsyncIterator[StreamChunk]]


class ContinuationCoordinator:
    """Drives one logical generation across as many requests as it takes.

    open_stream(partial) must start a request (a continuation when partial is
    not None) and return its StreamChunk records. Transport failures inside
    it should surface as TransportInterrupted.

    run() yields (event_type, data) tuples:
      ("text", str)                   fragment, in arrival order
      ("interrupted", PartialResponse) a stream was cut; continuing from here
      ("status", str)                 transient status for the user
      ("done", StreamChunk)           terminal record, text = full stitched text
      ("error", str)                  the server reported an error
    """

    def __init__(
        self,
        open_stream: StreamOpener,
        phase: Phase,
        threshold: float | None = None,
        budget: float | None = None,
        max_continuations: int | None = None,
        status_message: str = CONTINUING_MESSAGE,
    ):
        self.open_stream = open_stream
        self.phase = phase
        self.threshold = config.WATCHDOG_THRESHOLD_SECONDS if threshold is None else threshold
        self.budget = budget
        self.max_continuations = (
            config.MAX_CONTINUATIONS if max_continuations is None else max_continuations
        )
        self.status_message = status_message
        self.continuations = 0
        # Latest unresolved snapshot; None once the generation completes
        self.partial: PartialResponse | None = None

    async def run(self, partial: PartialResponse | None = None) -> AsyncIterator[tuple[str, Any]]:
        self.partial = partial
        self.continuations = 0

        while True:
            watchdog = Watchdog(
                threshold=self.threshold,
                phase=self.phase,
                budget=self.budget,
                accumulated_text=self.partial.text if self.partial else "",
            )
            stream = self.open_stream(self.partial)
            guarded = watch(stream, watchdog)
            final: StreamChunk | None = None
            interruption: TransportInterrupted | None = None

            try:
                watchdog.arm()
                async for record in guarded:
                    if record.error:
                        yield ("error", record.text or "The server reported an error.")
                        return
                    if record.done:
                        if record.interrupted:
                            # Server truncated on its own budget; its text is authoritative
                            if record.text is not None:
                                watchdog.accumulated_text = record.text
                            raise TransportInterrupted("server stream budget reached")
                        final = record
                        break
                    if record.chunk:
                        watchdog.feed(record.chunk)
                        yield ("text", record.chunk)
                if final is None:
                    raise TransportInterrupted("stream ended without a terminal record")
            except TransportInterrupted as e:
                interruption = e
            finally:
                watchdog.disarm()
                await close_stream(guarded)
                await close_stream(stream)

            if interruption is None:
                if final.text is None:
                    final = final.model_copy(update={"text": watchdog.accumulated_text})
                self.partial = None
                yield ("done", final)
                return

            self.partial = watchdog.snapshot()
            self.continuations += 1
            logger.warning(
                f"[continuation] {self.phase.value} stream interrupted ({interruption}); "
                f"{len(self.partial.text)} chars so far, continuation {self.continuations}"
                f"/{self.max_continuations}"
            )
            if self.continuations > self.max_continuations:
                raise ContinuationExhausted(
                    "The response was interrupted too many times. Please try again.",
                    self.partial,
                ) from interruption

            yield ("interrupted", self.partial)
            yield ("status", self.status_message)

"""
Tool Hire Advisor — Client
============================
The caller side of the protocol. The client owns everything the server does
not keep: the conversation state, the current phase, the project
information and any unfinished (partial) generation.

    async with AdvisorClient("http://localhost:8000") as advisor:
        async for event, data in advisor.start():
            ...
        async for event, data in advisor.send("I'm building a deck"):
            ...

send() yields (event_type, data) tuples:
  ("text", str)      incremental reply text
  ("status", str)    transient status, e.g. "Continuing…"
  ("done", str)      the full reply once a generation completes
  ("system", str)    dialogue messages (phase change, closing note)
  ("phase", Phase)   the phase changed
  ("error", str)     the generation failed; state is left as it was

Only one generation runs at a time. If a generation was left unfinished
(its continuations ran out or the server failed part-way), the next send()
first resumes it from the saved partial text before anything new is sent.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from toolhire import config
from toolhire.continuation import ContinuationCoordinator, ContinuationExhausted, TransportInterrupted
from toolhire.gateway import UpstreamError
from toolhire.models import AdvisorRequest, MalformedStreamRecord, PartialResponse, Phase, StreamChunk, Turn

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Welcome to DIY Project Tool Advisor! Let's find the right tools for your project. "
    "Please answer some questions about your project so we can recommend the best tools. "
    "The more information you can provide the better recommendations it can make."
)
OPENING_MESSAGE = "Hello! I'd like to discuss my project."
TRANSITION_MESSAGE = "Information gathering complete. Analysing your project needs..."
CLOSING_MESSAGE = "Thank you for using our DIY Project Tool Advisor! We hope this helps with your project."

REQUEST_TIMEOUT = 120.0  # seconds, non-streaming requests only
CONNECT_TIMEOUT = 10.0


class GenerationInProgress(RuntimeError):
    """A generation is already running for this conversation."""


@dataclass
class PendingGeneration:
    """An unfinished generation: the request that started it and its latest partial."""

    request: AdvisorRequest
    partial: PartialResponse


class AdvisorClient:
    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        streaming: bool = True,
        watchdog_threshold: float | None = None,
        max_continuations: int | None = None,
        transition_delay: float | None = None,
    ):
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url or config.ADVISOR_URL)
        self.streaming = streaming
        self.watchdog_threshold = (
            config.WATCHDOG_THRESHOLD_SECONDS if watchdog_threshold is None else watchdog_threshold
        )
        self.max_continuations = (
            config.MAX_CONTINUATIONS if max_continuations is None else max_continuations
        )
        self.transition_delay = (
            config.TRANSITION_DELAY_SECONDS if transition_delay is None else transition_delay
        )

        self.phase = Phase.GATHERING
        self.conversation_state: list[Turn] = []
        self.project_information = ""
        self.recommendation = ""
        self.pending: PendingGeneration | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "AdvisorClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def finished(self) -> bool:
        return self.phase is Phase.RECOMMENDATION and bool(self.recommendation) and self.pending is None

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    async def start(self) -> AsyncIterator[tuple[str, Any]]:
        """Open the dialogue with the standard greeting."""
        yield ("system", WELCOME_MESSAGE)
        async for event in self.send(OPENING_MESSAGE):
            yield event

    async def send(self, user_input: str) -> AsyncIterator[tuple[str, Any]]:
        if not user_input or not user_input.strip():
            raise ValueError("Message is empty.")
        if self._lock.locked():
            raise GenerationInProgress("A response is still being generated for this conversation.")

        async with self._lock:
            if self.pending is not None:
                logger.info("[client] Resuming unfinished generation before sending new input")
                async for event in self._run(self.pending.request, self.pending.partial):
                    yield event
                if self.pending is not None or self.phase is not Phase.GATHERING:
                    return

            if self.phase is not Phase.GATHERING:
                yield ("error", "The recommendation phase does not take further input.")
                return

            request = AdvisorRequest(
                phase=Phase.GATHERING.value,
                user_input=user_input,
                conversation_state=list(self.conversation_state),
                streaming=self.streaming,
            )
            async for event in self._run(request):
                yield event

    async def resume(self) -> AsyncIterator[tuple[str, Any]]:
        """Continue an unfinished generation, if there is one."""
        if self._lock.locked():
            raise GenerationInProgress("A response is still being generated for this conversation.")
        async with self._lock:
            if self.pending is None:
                return
            async for event in self._run(self.pending.request, self.pending.partial):
                yield event

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    async def _run(
        self,
        request: AdvisorRequest,
        partial: PartialResponse | None = None,
    ) -> AsyncIterator[tuple[str, Any]]:
        async for event, data in self._generate(request, partial):
            if event != "done":
                yield (event, data)
                continue
            yield ("done", data.text)
            async for follow_up in self._apply(request, data):
                yield follow_up

    async def _apply(self, request: AdvisorRequest, final: StreamChunk) -> AsyncIterator[tuple[str, Any]]:
        """Fold a completed generation into the client state."""
        if request.phase == Phase.RECOMMENDATION.value:
            self.recommendation = final.text or ""
            yield ("system", CLOSING_MESSAGE)
            return

        if final.conversation_state is not None:
            self.conversation_state = list(final.conversation_state)

        if final.is_complete and self.phase is Phase.GATHERING:
            self.project_information = final.project_information or final.text or ""
            self.phase = Phase.RECOMMENDATION
            yield ("system", TRANSITION_MESSAGE)
            yield ("phase", Phase.RECOMMENDATION)

            await asyncio.sleep(self.transition_delay)
            recommendation = AdvisorRequest(
                phase=Phase.RECOMMENDATION.value,
                project_information=self.project_information,
                streaming=self.streaming,
            )
            async for event in self._run(recommendation):
                yield event

    async def _generate(
        self,
        request: AdvisorRequest,
        partial: PartialResponse | None = None,
    ) -> AsyncIterator[tuple[str, Any]]:
        phase = Phase(request.phase)

        if not self.streaming:
            try:
                final = await self._post(request, partial)
            except UpstreamError as e:
                self._hold(request, partial)
                yield ("error", str(e))
                return
            self.pending = None
            yield ("text", final.text or "")
            yield ("done", final)
            return

        coordinator = ContinuationCoordinator(
            open_stream=lambda p: self._open_stream(request, p),
            phase=phase,
            threshold=self.watchdog_threshold,
            max_continuations=self.max_continuations,
        )
        try:
            async for event, data in coordinator.run(partial):
                if event == "interrupted":
                    continue
                if event == "error":
                    self._hold(request, coordinator.partial)
                    yield ("error", data)
                    continue
                if event == "done":
                    self.pending = None
                yield (event, data)
        except ContinuationExhausted as e:
            logger.error(f"[client] {phase.value} continuation limit reached at {len(e.partial.text)} chars")
            self._hold(request, e.partial)
            yield ("error", str(e))
        except UpstreamError as e:
            logger.error(f"[client] {phase.value} generation failed: {e}")
            self._hold(request, coordinator.partial)
            yield ("error", f"Sorry, there was an error processing your request: {e}")

    def _hold(self, request: AdvisorRequest, partial: PartialResponse | None) -> None:
        """Keep a failed generation for the next send() or resume().

        A failed gathering turn with no text yet is dropped; the user simply
        answers again. A failed recommendation is always kept, with an empty
        partial if need be.
        """
        if partial is None and request.phase == Phase.RECOMMENDATION.value:
            partial = PartialResponse(phase=Phase.RECOMMENDATION)
        self.pending = PendingGeneration(request, partial) if partial is not None else None

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------

    def _body(self, request: AdvisorRequest, partial: PartialResponse | None, streaming: bool) -> dict:
        return request.model_copy(update={"partial_response": partial, "streaming": streaming}).to_wire()

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("text"):
            return data["text"]
        return f"Server responded with status: {response.status_code}"

    async def _open_stream(
        self,
        request: AdvisorRequest,
        partial: PartialResponse | None,
    ) -> AsyncIterator[StreamChunk]:
        """POST a streaming request and yield its records.

        The read timeout equals the watchdog threshold, so a stalled socket
        and a stalled stream both end up as TransportInterrupted.
        """
        timeout = httpx.Timeout(self.watchdog_threshold or None, connect=CONNECT_TIMEOUT)
        try:
            async with self._http.stream(
                "POST",
                config.ADVISOR_ENDPOINT,
                json=self._body(request, partial, streaming=True),
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise UpstreamError(self._error_text(response))
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        record = StreamChunk.from_line(line)
                    except MalformedStreamRecord as e:
                        logger.warning(f"[client] Skipping malformed stream record: {e}")
                        continue
                    yield record
        except httpx.ConnectError as e:
            raise UpstreamError(f"Could not connect to the advisor server: {e}") from e
        except httpx.TransportError as e:
            raise TransportInterrupted(f"transport aborted: {e!r}") from e

    async def _post(self, request: AdvisorRequest, partial: PartialResponse | None) -> StreamChunk:
        try:
            response = await self._http.post(
                config.ADVISOR_ENDPOINT,
                json=self._body(request, partial, streaming=False),
                timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT),
            )
        except httpx.TransportError as e:
            raise UpstreamError(f"The request to the advisor server failed: {e!r}") from e

        if response.status_code != 200:
            raise UpstreamError(self._error_text(response))
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError("The server response was not valid JSON.") from e
        if data.get("error"):
            raise UpstreamError(data.get("text") or "The server reported an error.")
        return StreamChunk.model_validate({**data, "done": True})


# ===========================================================================
# Terminal chat
# ===========================================================================

async def _chat(base_url: str, streaming: bool) -> None:
    async with AdvisorClient(base_url, streaming=streaming) as advisor:

        async def render(events):
            async for event, data in events:
                if event == "text":
                    print(data, end="", flush=True)
                elif event == "done":
                    print()
                elif event == "status":
                    print(f"\n[{data}]", flush=True)
                elif event in ("system", "error"):
                    print(f"\n** {data}")

        await render(advisor.start())
        while not advisor.finished:
            try:
                user_input = input("\n> ").strip()
            except EOFError:
                break
            if not user_input:
                continue
            await render(advisor.send(user_input))


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with the tool hire advisor")
    parser.add_argument("--url", default=config.ADVISOR_URL, help="Advisor server base URL")
    parser.add_argument("--no-stream", action="store_true", help="Use non-streaming requests")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    asyncio.run(_chat(args.url, streaming=not args.no_stream))


if __name__ == "__main__":
    main()

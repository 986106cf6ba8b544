"""
Tool Hire Advisor — Consultation Engine
=========================================
Two-phase consultation (linear, one transition):

Phase 1 (Gathering): the model interviews the customer about their project,
replaying the full conversation on every turn. When its reply contains the
"## FINAL SUMMARY ##" marker, that whole reply becomes the project
information and the phase is complete.

Phase 2 (Recommendation): the project information and both catalog documents
are substituted into the recommendation template and sent as one prompt. No
conversation history is needed.

Either phase can be a continuation: when the request carries a partial
response, the model is asked to carry on from it and the new text is stitched
onto the partial. Completion is always checked against the stitched text, so
a marker split across the cut is still found.

The engine keeps nothing between calls. Everything it needs arrives in the
request and everything the caller needs goes back in the response.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator

from toolhire import config
from toolhire.catalog import CATALOG_UNAVAILABLE_MESSAGE, CatalogUnavailable, read_catalog
from toolhire.continuation import (
    Stitcher,
    TransportInterrupted,
    Watchdog,
    close_stream,
    new_stitcher,
    stitch,
    watch,
)
from toolhire.conversation import append_exchange, append_turn, normalize
from toolhire.gateway import UpstreamError, get_gateway
from toolhire.models import AdvisorRequest, AdvisorResponse, PartialResponse, Phase, StreamChunk, Turn
from toolhire.prompt_loader import load_prompts

logger = logging.getLogger(__name__)


GATHERING_CONTINUATION = (
    "Your previous reply was cut off before it finished. Continue it from exactly "
    "where it stopped. Do not repeat any text you have already written and do not "
    "add any preamble."
)

RECOMMENDATION_CONTINUATION = """
The following is a partially completed response that was cut off due to a timeout.
Please continue the response from where it was cut off, maintaining the same format and quality.
Do not repeat any of the text that is already there.

Partial response:
{partial_text}

Continue from where the response was cut off:"""


# ===========================================================================
# Phase checks
# ===========================================================================

def is_phase_complete(text: str) -> bool:
    return config.COMPLETION_SENTINEL in text


def validate_request(request: AdvisorRequest) -> str | None:
    """Return an error message for a request the engine cannot serve, else None."""
    if request.phase not in (Phase.GATHERING.value, Phase.RECOMMENDATION.value):
        return "Invalid phase specified. Must be 'gathering' or 'recommendation'."
    if request.partial_response and request.partial_response.phase.value != request.phase:
        return (
            f"Partial response belongs to the '{request.partial_response.phase.value}' phase, "
            f"not '{request.phase}'."
        )
    if request.phase == Phase.GATHERING.value and not (request.user_input or "").strip():
        return "User input is required for the gathering phase."
    if (
        request.phase == Phase.RECOMMENDATION.value
        and not (request.partial_response and request.partial_response.text)
        and not (request.project_information or "").strip()
    ):
        return "Project information is required for the recommendation phase."
    return None


# ===========================================================================
# Prompt building
# ===========================================================================

def _gathering_turns(
    state: list[Turn],
    user_input: str,
    partial: PartialResponse | None,
) -> list[Turn]:
    turns = append_turn(state, "user", user_input)
    if partial and partial.text:
        turns = append_turn(turns, "model", partial.text)
        turns = append_turn(turns, "user", GATHERING_CONTINUATION)
    return turns


def _recommendation_prompt(project_information: str, partial: PartialResponse | None) -> str:
    if partial and partial.text:
        # Continuations carry only the partial text; no template or catalog resend
        return RECOMMENDATION_CONTINUATION.replace("{partial_text}", partial.text)
    catalog = read_catalog()
    return load_prompts().render_recommendation(
        project_information=project_information,
        tool_information=catalog.tool_information,
        product_urls=catalog.product_urls,
    )


def _gathering_result(state: list[Turn], user_input: str, full_text: str) -> dict:
    is_complete = is_phase_complete(full_text)
    if is_complete:
        logger.info(f"[gathering→recommendation] Final summary detected ({len(full_text)} chars)")
    return {
        "text": full_text,
        "conversation_state": append_exchange(state, user_input, full_text),
        "is_complete": is_complete,
        "project_information": full_text if is_complete else "",
    }


def _stitch_onto(partial: PartialResponse | None, new_text: str) -> str:
    return stitch(
        partial.text if partial else "",
        new_text,
        trim_overlap=config.STITCH_TRIM_OVERLAP,
        min_overlap=config.STITCH_MIN_OVERLAP,
    )


# ===========================================================================
# Non-streaming handlers
# ===========================================================================

async def handle_gathering(
    user_input: str,
    conversation_state: list[Turn] | None = None,
    partial: PartialResponse | None = None,
) -> AdvisorResponse:
    """One gathering turn: replay history, append the exchange, check for the marker."""
    state = normalize(conversation_state)
    turns = _gathering_turns(state, user_input, partial)

    new_text = await get_gateway().generate(
        turns,
        system=load_prompts().gathering_prompt,
        max_tokens=config.GATHERING_MAX_TOKENS,
    )
    full_text = _stitch_onto(partial, new_text)
    logger.info(f"[gathering] {len(state)} prior turns, {len(new_text)} new chars")

    return AdvisorResponse(**_gathering_result(state, user_input, full_text))


async def handle_recommendation(
    project_information: str,
    partial: PartialResponse | None = None,
) -> AdvisorResponse:
    prompt = _recommendation_prompt(project_information, partial)
    new_text = await get_gateway().generate(prompt, max_tokens=config.RECOMMENDATION_MAX_TOKENS)
    full_text = _stitch_onto(partial, new_text)
    logger.info(f"[recommendation] {len(new_text)} new chars, {len(full_text)} total")
    return AdvisorResponse(text=full_text, error=False)


async def generate_advisor_response(request: AdvisorRequest) -> AdvisorResponse:
    """Dispatch a non-streaming request to its phase handler.

    Handler failures come back as {error: true, text} rather than raising.
    """
    try:
        if request.phase == Phase.GATHERING.value:
            return await handle_gathering(
                user_input=request.user_input or "",
                conversation_state=request.conversation_state,
                partial=request.partial_response,
            )
        return await handle_recommendation(
            project_information=request.project_information or "",
            partial=request.partial_response,
        )
    except CatalogUnavailable as e:
        logger.error(f"[recommendation] {e}")
        return AdvisorResponse(text=CATALOG_UNAVAILABLE_MESSAGE, error=True)
    except UpstreamError as e:
        logger.error(f"[{request.phase}] Upstream failure: {e}")
        return AdvisorResponse(text=f"An error occurred while processing your request: {e}", error=True)


# ===========================================================================
# Streaming handlers
# ===========================================================================

async def _relay(fragments: AsyncIterator[str], stitcher: Stitcher, phase: Phase) -> AsyncIterator[StreamChunk]:
    """Forward gateway fragments as chunks.

    With a stream budget configured, the upstream call is cut when the budget
    runs out and the relay ends with an interrupted terminal chunk carrying
    the stitched text so far. Otherwise it ends without a terminal chunk and
    the caller sends the final record.
    """
    budget = config.STREAM_BUDGET_SECONDS or None
    watchdog = Watchdog(threshold=None, phase=phase, budget=budget)
    guarded = watch(fragments, watchdog)
    interrupted = False

    try:
        watchdog.arm()
        async for fragment in guarded:
            out = stitcher.feed(fragment)
            if out:
                yield StreamChunk(chunk=out)
    except TransportInterrupted:
        interrupted = True
    finally:
        watchdog.disarm()
        await close_stream(guarded)
        await close_stream(fragments)

    tail = stitcher.flush()
    if tail:
        yield StreamChunk(chunk=tail)

    if interrupted:
        logger.warning(
            f"[{phase.value}-stream] Stream budget of {budget}s reached; "
            f"truncating at {len(stitcher.text)} chars"
        )
        yield StreamChunk(done=True, interrupted=True, text=stitcher.text)


async def stream_gathering(
    user_input: str,
    conversation_state: list[Turn] | None = None,
    partial: PartialResponse | None = None,
) -> AsyncIterator[StreamChunk]:
    state = normalize(conversation_state)
    turns = _gathering_turns(state, user_input, partial)
    stitcher = new_stitcher(partial)

    fragments = get_gateway().generate_stream(
        turns,
        system=load_prompts().gathering_prompt,
        max_tokens=config.GATHERING_MAX_TOKENS,
    )
    async for chunk in _relay(fragments, stitcher, Phase.GATHERING):
        yield chunk
        if chunk.done:
            return

    result = _gathering_result(state, user_input, stitcher.text)
    yield StreamChunk(done=True, **result)


async def stream_recommendation(
    project_information: str,
    partial: PartialResponse | None = None,
) -> AsyncIterator[StreamChunk]:
    prompt = _recommendation_prompt(project_information, partial)
    stitcher = new_stitcher(partial)

    fragments = get_gateway().generate_stream(prompt, max_tokens=config.RECOMMENDATION_MAX_TOKENS)
    async for chunk in _relay(fragments, stitcher, Phase.RECOMMENDATION):
        yield chunk
        if chunk.done:
            return

    logger.info(f"[recommendation-stream] Completed with {len(stitcher.text)} chars")
    yield StreamChunk(done=True, text=stitcher.text)


async def generate_advisor_response_stream(request: AdvisorRequest) -> AsyncIterator[StreamChunk]:
    """Streaming dispatch. Always ends with exactly one done=True chunk."""
    try:
        if request.phase == Phase.GATHERING.value:
            stream = stream_gathering(
                user_input=request.user_input or "",
                conversation_state=request.conversation_state,
                partial=request.partial_response,
            )
        else:
            stream = stream_recommendation(
                project_information=request.project_information or "",
                partial=request.partial_response,
            )
        async for chunk in stream:
            yield chunk
    except CatalogUnavailable as e:
        logger.error(f"[recommendation-stream] {e}")
        yield StreamChunk(done=True, error=True, text=CATALOG_UNAVAILABLE_MESSAGE)
    except UpstreamError as e:
        logger.error(f"[{request.phase}-stream] Upstream failure: {e}")
        yield StreamChunk(done=True, error=True, text=f"Error in streaming response: {e}")

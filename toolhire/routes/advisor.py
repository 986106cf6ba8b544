"""
Tool Hire Advisor — Recommendation Routes
"""
from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from toolhire import config
from toolhire.consultation_engine import (
    generate_advisor_response,
    generate_advisor_response_stream,
    validate_request,
)
from toolhire.models import AdvisorRequest, StreamChunk

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(config.ADVISOR_ENDPOINT)
async def tool_recommendation(req: AdvisorRequest):
    """Serve one gathering turn or one recommendation, streamed or not.

    The server keeps no session: the request carries the conversation state
    and the response returns the updated copy.
    """
    problem = validate_request(req)
    if problem:
        return JSONResponse(status_code=400, content={"error": True, "text": problem})

    if not req.streaming:
        try:
            result = await generate_advisor_response(req)
        except Exception as e:
            logger.exception(f"Error processing request: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": True, "text": f"An error occurred while processing your request: {e}"},
            )
        return result.to_wire()

    async def record_generator():
        """NDJSON record generator."""
        try:
            async for chunk in generate_advisor_response_stream(req):
                yield chunk.to_line()
        except Exception as e:
            logger.exception(f"Streaming {req.phase} failed: {e}")
            yield StreamChunk(done=True, error=True, text=f"Error in streaming response: {e}").to_line()

    return StreamingResponse(
        record_generator(),
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

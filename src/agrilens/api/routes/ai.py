"""Generative advice endpoints.

The prompt has already passed the injection detector when a handler
runs; ``request["prompt_request"]`` holds the validated body.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime

from aiohttp import web

from agrilens.logging import get_logger

log = get_logger("agrilens.api.routes.ai")


async def handle_advice(request: web.Request) -> web.Response:
    """POST /api/ai/advice (and the legacy /api/ai/gemini-advice)."""
    body = request["prompt_request"]
    assessment = request.get("risk_assessment")
    client = request.app["generative_client"]
    started = time.monotonic()

    log.info(
        "ai_advice_requested",
        prompt_length=len(body.prompt),
        model=body.model,
        has_context=body.context is not None,
        risk_score=assessment.score if assessment else 0,
    )

    result = await client.generate(body.prompt, model=body.model, context=body.context)
    response_ms = int((time.monotonic() - started) * 1000)

    log.info(
        "ai_advice_generated",
        model=result["model"],
        response_length=len(result["text"]),
        response_ms=response_ms,
    )

    return web.json_response(
        {
            "success": True,
            "result": result["text"],
            "metadata": {
                "model": result["model"],
                "responseTime": response_ms,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        }
    )

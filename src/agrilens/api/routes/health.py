"""Health check endpoint for the field-monitoring API."""

from datetime import UTC, datetime

from aiohttp import web

from agrilens import __version__


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/health: exempt from rate limiting."""
    settings = request.app["settings"]
    return web.json_response(
        {
            "status": "healthy",
            "version": __version__,
            "environment": settings.environment,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )

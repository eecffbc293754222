"""Geospatial analysis endpoints.

Geometry has already passed the validator; ``request["analysis_request"]``
holds the parsed body.
"""

from __future__ import annotations

from datetime import UTC, datetime

from aiohttp import web

from agrilens.logging import get_logger
from agrilens.security.geometry import approximate_area
from agrilens.security.models import GeoPayload

log = get_logger("agrilens.api.routes.analysis")

# Upper bounds in square metres
_SMALL_AREA = 1_000
_MEDIUM_AREA = 100_000
_LARGE_AREA = 1_000_000


def area_recommendations(area: float) -> list[str]:
    """Operator guidance for an area of interest of *area* square metres."""
    if area < _SMALL_AREA:
        return [
            "Suited to small-scale analysis",
            "Detailed vegetation indices are available",
        ]
    if area < _MEDIUM_AREA:
        return [
            "Suited to medium-sized field analysis",
            "Analysis runs at an appropriate resolution",
        ]
    if area < _LARGE_AREA:
        return [
            "Large field analysis",
            "Processing may take longer",
        ]
    return [
        "Very large analysis area",
        "Consider splitting the area into smaller parts",
        "Processing time may increase significantly",
    ]


async def handle_analysis(request: web.Request) -> web.Response:
    """POST /api/analysis: forward a validated area to the geospatial backend."""
    body = request["analysis_request"]
    client = request.app["geospatial_client"]

    options = body.options.model_dump(exclude_none=True) if body.options else None
    result = await client.analyze(body.aoiGeoJSON.model_dump(), options)

    log.info("analysis_completed", geometry_type=body.aoiGeoJSON.type)
    return web.json_response(
        {
            "success": True,
            "result": result,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )


async def handle_validate_area(request: web.Request) -> web.Response:
    """POST /api/analysis/validate-area: validate and size an area of interest."""
    geometry = request["analysis_request"].aoiGeoJSON
    area = approximate_area(GeoPayload(kind=geometry.type, coordinates=geometry.coordinates))

    return web.json_response(
        {
            "valid": True,
            "area": area,
            "unit": "square_meters",
            "recommendations": area_recommendations(area),
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )

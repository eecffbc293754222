"""Pydantic models for request bodies guarded by the defense layer."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# ---------------------------------------------------------------------------
# Free-text path
# ---------------------------------------------------------------------------


class PromptRequest(BaseModel):
    """Body of a generative-text request."""

    model_config = ConfigDict(extra="ignore")

    prompt: str = Field(min_length=1)
    model: str | None = None
    context: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Geometry path
# ---------------------------------------------------------------------------


class GeoJSONGeometry(BaseModel):
    """Shape-only envelope; coordinates are checked by the geometry validator."""

    model_config = ConfigDict(extra="ignore")

    type: str
    coordinates: list[Any]


class AnalysisOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    startDate: str | None = None  # noqa: N815
    endDate: str | None = None  # noqa: N815
    indices: list[Literal["NDVI", "NDMI", "NDRE"]] | None = None
    cloudThreshold: float | None = Field(default=None, ge=0, le=100)  # noqa: N815


class AnalysisRequest(BaseModel):
    """Body of a geospatial analysis request."""

    model_config = ConfigDict(extra="ignore")

    aoiGeoJSON: GeoJSONGeometry  # noqa: N815
    options: AnalysisOptions | None = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    apiKey: str = Field(min_length=1, max_length=512)  # noqa: N815


def field_errors(exc: ValidationError) -> list[dict[str, str]]:
    """Convert a pydantic error into ``[{"field", "message"}]`` entries."""
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "body",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]

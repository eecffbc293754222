"""Structural validation of untrusted GeoJSON geometry.

Checks run fail-fast in a fixed order: geometry type, bounded shape
traversal (depth and coordinate count), coordinate bounds, then
type-specific structure. The traversal is iterative and stops as soon as
a limit is crossed, so hostile payloads cannot force unbounded work.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from agrilens.logging import get_logger
from agrilens.security.models import GeometryKind, GeometryValidationResult, GeoPayload

log = get_logger("agrilens.security.geometry")

DEFAULT_MAX_COORDINATES = 1000
DEFAULT_MAX_NESTING = 10
LNG_BOUNDS = (-180.0, 180.0)
LAT_BOUNDS = (-90.0, 90.0)

_MIN_LINE_POSITIONS = 2
_MIN_RING_POSITIONS = 4

# Rough conversion of square degrees to square metres near the equator
_SQ_DEGREE_TO_SQ_METRE = 12309484


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _as_float(value: int | float) -> float | None:
    """Float value of a coordinate, or None for ints beyond float range."""
    try:
        return float(value)
    except OverflowError:
        return None


def _is_position(node: Any) -> bool:
    """A leaf is a non-empty list whose first member is a number."""
    return isinstance(node, list) and len(node) > 0 and _is_number(node[0])


@dataclass
class _Shape:
    depth: int = 0
    count: int = 0
    leaves: list[list[Any]] | None = None
    error: str | None = None


class GeometryValidator:
    """Validate :class:`GeoPayload` instances against configured limits."""

    def __init__(
        self,
        *,
        allowed_kinds: Iterable[str] | None = None,
        max_coordinates: int = DEFAULT_MAX_COORDINATES,
        max_nesting: int = DEFAULT_MAX_NESTING,
        lng_bounds: tuple[float, float] = LNG_BOUNDS,
        lat_bounds: tuple[float, float] = LAT_BOUNDS,
    ) -> None:
        kinds = list(allowed_kinds) if allowed_kinds is not None else [k.value for k in GeometryKind]
        unknown = [k for k in kinds if k not in GeometryKind._value2member_map_]
        if unknown:
            raise ValueError(f"Unsupported geometry kinds in configuration: {unknown}")
        self._allowed = frozenset(kinds)
        self._max_coordinates = max_coordinates
        self._max_nesting = max_nesting
        self._lng_bounds = lng_bounds
        self._lat_bounds = lat_bounds

    def validate(self, payload: GeoPayload) -> GeometryValidationResult:
        """Validate *payload*; never raises and never returns partial success."""
        kind = payload.kind
        if not isinstance(kind, str) or kind not in self._allowed:
            return self._fail(f"Unsupported geometry type: {kind!r}")

        coordinates = payload.coordinates
        if not isinstance(coordinates, list):
            return self._fail("coordinates must be an array")

        shape = self._measure(coordinates)
        if shape.error is not None:
            return self._fail(shape.error, shape)

        bounds_error = self._check_bounds(shape.leaves or [])
        if bounds_error is not None:
            return self._fail(bounds_error, shape)

        structure_error = self._check_structure(GeometryKind(kind), coordinates)
        if structure_error is not None:
            return self._fail(structure_error, shape)

        return GeometryValidationResult(
            valid=True,
            measured_depth=shape.depth,
            measured_coordinate_count=shape.count,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _measure(self, coordinates: list[Any]) -> _Shape:
        """Single bounded traversal measuring depth and leaf count."""
        shape = _Shape(leaves=[])
        stack: list[tuple[Any, int]] = [(coordinates, 1)]
        while stack:
            node, depth = stack.pop()
            if depth > shape.depth:
                shape.depth = depth
            if depth > self._max_nesting:
                shape.error = (
                    f"coordinate nesting depth exceeds the maximum of {self._max_nesting}"
                )
                return shape

            if _is_position(node):
                shape.count += 1
                if shape.count > self._max_coordinates:
                    shape.error = (
                        f"coordinate count exceeds the maximum of {self._max_coordinates}"
                    )
                    return shape
                shape.leaves.append(node)  # type: ignore[union-attr]
                continue

            for child in reversed(node):
                if not isinstance(child, list):
                    shape.error = "coordinates must be nested arrays of [longitude, latitude] pairs"
                    return shape
                stack.append((child, depth + 1))
        return shape

    def _check_bounds(self, leaves: list[list[Any]]) -> str | None:
        lng_min, lng_max = self._lng_bounds
        lat_min, lat_max = self._lat_bounds
        for position in leaves:
            if len(position) != 2 or not all(_is_number(v) for v in position):
                return f"each position must be exactly two numbers, got {position!r:.60}"
            lng, lat = _as_float(position[0]), _as_float(position[1])
            if lng is None or lat is None or not (math.isfinite(lng) and math.isfinite(lat)):
                return "coordinates must be finite numbers"
            if not lng_min <= lng <= lng_max:
                return f"longitude out of range [{lng_min:g}, {lng_max:g}]: {lng}"
            if not lat_min <= lat <= lat_max:
                return f"latitude out of range [{lat_min:g}, {lat_max:g}]: {lat}"
        return None

    @staticmethod
    def _check_structure(kind: GeometryKind, coordinates: list[Any]) -> str | None:
        match kind:
            case GeometryKind.POINT:
                if not _is_position(coordinates):
                    return "Point coordinates must be a single [longitude, latitude] pair"
            case GeometryKind.LINE_STRING:
                if not all(_is_position(p) for p in coordinates):
                    return "LineString coordinates must be an array of positions"
                if len(coordinates) < _MIN_LINE_POSITIONS:
                    return f"LineString requires at least {_MIN_LINE_POSITIONS} positions"
            case GeometryKind.POLYGON:
                if len(coordinates) == 0 or _is_position(coordinates):
                    return "Polygon requires at least one linear ring"
                for index, ring in enumerate(coordinates):
                    if not all(_is_position(p) for p in ring):
                        return f"Polygon ring {index} must be an array of positions"
                    if len(ring) < _MIN_RING_POSITIONS:
                        return (
                            f"Polygon ring {index} requires at least "
                            f"{_MIN_RING_POSITIONS} positions"
                        )
                    first, last = ring[0], ring[-1]
                    if first[0] != last[0] or first[1] != last[1]:
                        return (
                            f"Polygon ring {index} fails closure: "
                            "first and last positions must be equal"
                        )
        return None

    @staticmethod
    def _fail(reason: str, shape: _Shape | None = None) -> GeometryValidationResult:
        log.debug("geometry_rejected", reason=reason)
        return GeometryValidationResult(
            valid=False,
            reason=reason,
            measured_depth=shape.depth if shape else 0,
            measured_coordinate_count=shape.count if shape else 0,
        )


def approximate_area(payload: GeoPayload) -> float:
    """Planar area of a polygon's outer ring in square metres (0 for other kinds).

    Only meaningful for payloads that already passed validation.
    """
    if payload.kind != GeometryKind.POLYGON.value:
        return 0.0
    ring = payload.coordinates[0]
    if len(ring) < _MIN_RING_POSITIONS:
        return 0.0
    twice_area = 0.0
    for (x1, y1), (x2, y2) in zip(ring, ring[1:], strict=False):
        twice_area += x1 * y2 - x2 * y1
    return abs(twice_area / 2) * _SQ_DEGREE_TO_SQ_METRE

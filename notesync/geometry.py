# notesync:geometry.py

# MIT License
#
# Copyright (c) 2025 Jonas Waldeck
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND.

"""
Planar point-in-polygon helpers for country boundaries stored as GeoJSON.

Coordinates are (lon, lat) pairs as in GeoJSON. A shape is a list of
polygons, each polygon an outer ring plus zero or more holes. Rings may be
open or closed; the closing edge is implied.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Sequence, Tuple, Union

EARTH_RADIUS_KM = 6371.0088

# Degrees. Points closer than this to an edge count as on the boundary.
BOUNDARY_EPS = 1e-9

INSIDE = "inside"
BOUNDARY = "boundary"
OUTSIDE = "outside"

Ring = List[Tuple[float, float]]
Polygon = Tuple[Ring, List[Ring]]
Shape = List[Polygon]
BBox = Tuple[float, float, float, float]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi/2)**2 + math.cos(phi1)*math.cos(phi2)*math.sin(dlambda/2)**2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def _ring(coords: Sequence[Sequence[float]]) -> Ring:
    ring = [(float(c[0]), float(c[1])) for c in coords]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    if len(ring) < 3:
        raise ValueError(f"ring needs at least 3 distinct points, got {len(ring)}")
    return ring


def shape_from_geojson(geom: Union[str, Dict[str, Any]]) -> Shape:
    """Accepts a Polygon/MultiPolygon geometry (dict or JSON text) or a Feature wrapping one."""
    if isinstance(geom, str):
        geom = json.loads(geom)
    if geom.get("type") == "Feature":
        geom = geom.get("geometry") or {}

    gtype = geom.get("type")
    coords = geom.get("coordinates") or []
    if gtype == "Polygon":
        polys = [coords]
    elif gtype == "MultiPolygon":
        polys = coords
    else:
        raise ValueError(f"unsupported geometry type: {gtype!r}")

    shape: Shape = []
    for rings in polys:
        if not rings:
            continue
        shape.append((_ring(rings[0]), [_ring(h) for h in rings[1:]]))
    if not shape:
        raise ValueError("geometry has no polygons")
    return shape


def shape_bbox(shape: Shape) -> BBox:
    """(min_lon, min_lat, max_lon, max_lat) over all outer rings."""
    lons = [p[0] for outer, _ in shape for p in outer]
    lats = [p[1] for outer, _ in shape for p in outer]
    return min(lons), min(lats), max(lons), max(lats)


def bbox_contains(bbox: BBox, lon: float, lat: float, eps: float = BOUNDARY_EPS) -> bool:
    return (bbox[0] - eps) <= lon <= (bbox[2] + eps) and (bbox[1] - eps) <= lat <= (bbox[3] + eps)


def _on_segment(px: float, py: float, ax: float, ay: float, bx: float, by: float) -> bool:
    if px < min(ax, bx) - BOUNDARY_EPS or px > max(ax, bx) + BOUNDARY_EPS:
        return False
    if py < min(ay, by) - BOUNDARY_EPS or py > max(ay, by) + BOUNDARY_EPS:
        return False
    cross = (bx - ax) * (py - ay) - (by - ay) * (px - ax)
    seg_len = math.hypot(bx - ax, by - ay)
    return abs(cross) <= BOUNDARY_EPS * max(seg_len, 1.0)


def _edges(ring: Ring):
    n = len(ring)
    for i in range(n):
        yield ring[i], ring[(i + 1) % n]


def _on_ring(lon: float, lat: float, ring: Ring) -> bool:
    return any(_on_segment(lon, lat, a[0], a[1], b[0], b[1]) for a, b in _edges(ring))


def _ray_cast(lon: float, lat: float, ring: Ring) -> bool:
    inside = False
    for (ax, ay), (bx, by) in _edges(ring):
        if (ay > lat) != (by > lat):
            x_cross = ax + (lat - ay) * (bx - ax) / (by - ay)
            if lon < x_cross:
                inside = not inside
    return inside


def locate_in_polygon(lon: float, lat: float, polygon: Polygon) -> str:
    outer, holes = polygon
    if _on_ring(lon, lat, outer) or any(_on_ring(lon, lat, h) for h in holes):
        return BOUNDARY
    if not _ray_cast(lon, lat, outer):
        return OUTSIDE
    if any(_ray_cast(lon, lat, h) for h in holes):
        return OUTSIDE
    return INSIDE


def locate_in_shape(lon: float, lat: float, shape: Shape) -> str:
    """INSIDE if strictly inside any part, else BOUNDARY if touching any part, else OUTSIDE."""
    on_edge = False
    for polygon in shape:
        where = locate_in_polygon(lon, lat, polygon)
        if where == INSIDE:
            return INSIDE
        if where == BOUNDARY:
            on_edge = True
    return BOUNDARY if on_edge else OUTSIDE


def _closest_on_segment(px: float, py: float, ax: float, ay: float, bx: float, by: float) -> Tuple[float, float]:
    # Equirectangular projection around the query point is plenty for a km tolerance.
    k = math.cos(math.radians(py))
    dx, dy = (bx - ax) * k, by - ay
    denom = dx * dx + dy * dy
    if denom == 0:
        return ax, ay
    t = (((px - ax) * k) * dx + (py - ay) * dy) / denom
    t = max(0.0, min(1.0, t))
    return ax + t * (bx - ax), ay + t * (by - ay)


def distance_to_shape_km(lat: float, lon: float, shape: Shape) -> float:
    best = math.inf
    for outer, holes in shape:
        for ring in [outer, *holes]:
            for (ax, ay), (bx, by) in _edges(ring):
                cx, cy = _closest_on_segment(lon, lat, ax, ay, bx, by)
                d = haversine_km(lat, lon, cy, cx)
                if d < best:
                    best = d
    return best

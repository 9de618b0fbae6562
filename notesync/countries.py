# notesync:countries.py

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
Country assignment for note coordinates.

Fast path: a slippy-tile grid maps each tile to the countries whose bounding
box overlaps it, so a lookup only tests a handful of polygons. The answer is
accepted when the point is strictly inside exactly one candidate.

Fallback: anything else (no candidate, several candidates, a point on an
edge) is resolved by scanning every polygon, maritime ones included. Land
wins over maritime on shared boundaries; with no containing polygon the
nearest one within a small tolerance is used, otherwise NO_COUNTRY.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from notesync.geometry import (
    INSIDE,
    OUTSIDE,
    BBox,
    Shape,
    bbox_contains,
    distance_to_shape_km,
    locate_in_shape,
    shape_bbox,
    shape_from_geojson,
)
from notesync.models import NO_COUNTRY
from notesync.tiles import lonlat_to_tile_xy, tile_range_for_bbox

logger = logging.getLogger(__name__)

PATH_CURRENT = "current"
PATH_WATERS = "international_waters"
PATH_FAST = "fast"
PATH_FALLBACK = "fallback"
PATH_NEAREST = "nearest"
PATH_NONE = "none"

# Coarse zones in priority order: (name, min_lon, min_lat, max_lon, max_lat).
# Countries tagged with the zone of the query point are tested first.
ZONES: Tuple[Tuple[str, float, float, float, float], ...] = (
    ("null_island", -1.0, -1.0, 1.0, 1.0),
    ("arctic", -180.0, 66.5, 180.0, 90.0),
    ("antarctic", -180.0, -90.0, 180.0, -60.0),
    ("usa_canada", -170.0, 15.0, -50.0, 66.5),
    ("central_america", -120.0, 5.0, -60.0, 33.0),
    ("south_america", -92.0, -56.0, -30.0, 13.0),
    ("western_europe", -25.0, 35.0, 20.0, 66.5),
    ("eastern_europe", 20.0, 35.0, 45.0, 66.5),
    ("northern_africa", -20.0, 0.0, 45.0, 38.0),
    ("southern_africa", 5.0, -36.0, 55.0, 0.0),
    ("middle_east", 34.0, 12.0, 63.0, 43.0),
    ("asia", 60.0, -11.0, 180.0, 66.5),
    ("oceania", 110.0, -50.0, 180.0, 0.0),
)


def zone_for(lat: float, lon: float) -> Optional[str]:
    for name, x0, y0, x1, y1 in ZONES:
        if x0 <= lon <= x1 and y0 <= lat <= y1:
            return name
    return None


@dataclass(frozen=True)
class Country:
    country_id: int
    name: str
    is_maritime: bool
    zone: Optional[str]
    shape: Shape
    bbox: BBox


@dataclass(frozen=True)
class Assignment:
    country_id: int
    path: str


class TileIndex:
    """Tile (x, y) -> countries whose bbox overlaps it, at a fixed zoom."""

    def __init__(self, countries: Sequence[Country], zoom: int = 6, max_tiles_per_country: int = 4096):
        self.zoom = zoom
        self._cells: Dict[Tuple[int, int], List[Country]] = {}
        # Countries spanning too many tiles are checked for every lookup.
        self._wide: List[Country] = []

        for c in countries:
            min_lon, min_lat, max_lon, max_lat = c.bbox
            x0, y0, x1, y1 = tile_range_for_bbox(min_lon, min_lat, max_lon, max_lat, zoom)
            n_tiles = (x1 - x0 + 1) * (y1 - y0 + 1)
            if n_tiles > max_tiles_per_country:
                self._wide.append(c)
                continue
            for x in range(x0, x1 + 1):
                for y in range(y0, y1 + 1):
                    self._cells.setdefault((x, y), []).append(c)

    def candidates(self, lat: float, lon: float) -> List[Country]:
        x, y = lonlat_to_tile_xy(lon, lat, self.zoom)
        found = list(self._cells.get((x, y), ()))
        found.extend(self._wide)
        return [c for c in found if bbox_contains(c.bbox, lon, lat)]


class CountryAssigner:
    def __init__(
        self,
        countries: Iterable[Country],
        international_waters: Iterable[Shape] = (),
        *,
        tolerance_km: float = 2.0,
        zoom: int = 6,
    ):
        self._countries: List[Country] = sorted(countries, key=lambda c: c.country_id)
        self._by_id: Dict[int, Country] = {c.country_id: c for c in self._countries}
        self._waters: List[Tuple[Shape, BBox]] = [(s, shape_bbox(s)) for s in international_waters]
        self._index = TileIndex(self._countries, zoom=zoom)
        self.tolerance_km = float(tolerance_km)

        self._stats: Counter = Counter()
        self._stats_lock = threading.Lock()

    @classmethod
    def from_connection(cls, conn: sqlite3.Connection, **kwargs) -> "CountryAssigner":
        source = SqliteGeometrySource(conn)
        return cls(source.load_countries(), source.load_international_waters(), **kwargs)

    def __len__(self) -> int:
        return len(self._countries)

    def _count(self, path: str) -> None:
        with self._stats_lock:
            self._stats[path] += 1

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _ordered(self, candidates: List[Country], lat: float, lon: float) -> List[Country]:
        zone = zone_for(lat, lon)
        return sorted(candidates, key=lambda c: (0 if zone and c.zone == zone else 1, c.country_id))

    def _in_international_waters(self, lat: float, lon: float) -> bool:
        for shape, bbox in self._waters:
            if bbox_contains(bbox, lon, lat) and locate_in_shape(lon, lat, shape) == INSIDE:
                return True
        return False

    def fast_path(self, lat: float, lon: float) -> Optional[int]:
        """Country id when the point is strictly inside exactly one indexed candidate, else None."""
        inside: List[Country] = []
        for c in self._ordered(self._index.candidates(lat, lon), lat, lon):
            where = locate_in_shape(lon, lat, c.shape)
            if where == OUTSIDE:
                continue
            if where != INSIDE:
                # On an edge: ambiguous by definition.
                return None
            inside.append(c)
            if len(inside) > 1:
                return None
        return inside[0].country_id if len(inside) == 1 else None

    def fallback(self, lat: float, lon: float) -> Assignment:
        matches: List[Tuple[Country, str]] = []
        for c in self._countries:
            where = locate_in_shape(lon, lat, c.shape)
            if where != OUTSIDE:
                matches.append((c, where))

        if matches:
            best, _ = min(matches, key=lambda m: (m[0].is_maritime, m[1] != INSIDE, m[0].country_id))
            return Assignment(best.country_id, PATH_FALLBACK)

        nearest: Optional[Tuple[float, bool, int]] = None
        for c in self._countries:
            d = distance_to_shape_km(lat, lon, c.shape)
            key = (d, c.is_maritime, c.country_id)
            if d <= self.tolerance_km and (nearest is None or key < nearest):
                nearest = key
        if nearest is not None:
            return Assignment(nearest[2], PATH_NEAREST)

        return Assignment(NO_COUNTRY, PATH_NONE)

    def locate(self, lat: float, lon: float, current: Optional[int] = None) -> Assignment:
        if current is not None and current in self._by_id:
            if locate_in_shape(lon, lat, self._by_id[current].shape) == INSIDE:
                self._count(PATH_CURRENT)
                return Assignment(current, PATH_CURRENT)

        if self._in_international_waters(lat, lon):
            self._count(PATH_WATERS)
            return Assignment(NO_COUNTRY, PATH_WATERS)

        cid = self.fast_path(lat, lon)
        if cid is not None:
            self._count(PATH_FAST)
            return Assignment(cid, PATH_FAST)

        result = self.fallback(lat, lon)
        self._count(result.path)
        if result.path == PATH_NONE:
            logger.debug("No country for lat=%.6f lon=%.6f", lat, lon)
        return result

    def assign(self, lat: float, lon: float) -> int:
        return self.locate(lat, lon).country_id


class SqliteGeometrySource:
    """Read-only view of the boundary tables maintained by the boundary importer."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def load_countries(self) -> List[Country]:
        rows = self.conn.execute(
            "SELECT country_id, name, is_maritime, zone, geom_geojson FROM countries ORDER BY country_id;"
        ).fetchall()
        out: List[Country] = []
        for r in rows:
            try:
                shape = shape_from_geojson(r["geom_geojson"])
            except ValueError as e:
                logger.warning("Skipping country %s (%s): bad geometry: %s", r["country_id"], r["name"], e)
                continue
            out.append(
                Country(
                    country_id=int(r["country_id"]),
                    name=r["name"],
                    is_maritime=bool(r["is_maritime"]),
                    zone=r["zone"],
                    shape=shape,
                    bbox=shape_bbox(shape),
                )
            )
        logger.info("Loaded %d country polygons", len(out))
        return out

    def load_international_waters(self) -> List[Shape]:
        rows = self.conn.execute("SELECT id, geom_geojson FROM international_waters ORDER BY id;").fetchall()
        out: List[Shape] = []
        for r in rows:
            try:
                out.append(shape_from_geojson(r["geom_geojson"]))
            except ValueError as e:
                logger.warning("Skipping international waters area %s: %s", r["id"], e)
        return out

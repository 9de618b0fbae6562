# notesync:tiles.py

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

import math
from typing import Tuple

# Web Mercator stops at ~85.0511 degrees; notes near the poles are clamped onto the edge tiles.
MAX_MERCATOR_LAT = 85.05112878


def lonlat_to_tile_xy(lon: float, lat: float, z: int) -> Tuple[int, int]:
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))
    n = 2 ** z
    x = int((lon + 180.0) / 360.0 * n)
    lat_rad = math.radians(lat)
    y = int((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n)
    return max(0, min(n - 1, x)), max(0, min(n - 1, y))


def tile_range_for_bbox(
    min_lon: float, min_lat: float, max_lon: float, max_lat: float, z: int
) -> Tuple[int, int, int, int]:
    """Inclusive (x0, y0, x1, y1) tile span covering a lon/lat box."""
    x0, y0 = lonlat_to_tile_xy(min_lon, max_lat, z)
    x1, y1 = lonlat_to_tile_xy(max_lon, min_lat, z)
    return x0, y0, x1, y1

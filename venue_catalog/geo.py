"""Geospatial helpers."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

from . import config

_METERS_PER_DEGREE_LAT = 111320.0
_GEOHASH_ALPHABET = "0123456789bcdefghjkmnpqrstuvwxyz"


@dataclass(frozen=True)
class Tile:
    tile_id: str
    lat: float
    lon: float
    radius_m: int
    row: int
    col: int
    is_outer: bool


def build_tiles(
    center_lat: float,
    center_lon: float,
    radius_m: float,
    rows: int = config.DEFAULT_GRID_ROWS,
    cols: int = config.DEFAULT_GRID_COLS,
    edge_safety_factor: float = config.TILE_EDGE_SAFETY_FACTOR,
) -> List[Tile]:
    """Partition a city circle into a rows x cols lattice of search circles.

    Tile centers span the full city diameter. Tiles on the outer ring get
    their radius inflated by ``edge_safety_factor`` so the city edge is
    covered.
    """
    if rows < 1 or cols < 1:
        raise ValueError("rows and cols must be >= 1")
    if radius_m <= 0:
        raise ValueError("radius_m must be positive")

    tile_radius = int(math.ceil(radius_m / max(rows, cols)))
    edge_radius = int(math.ceil(tile_radius * edge_safety_factor))

    cos_center = math.cos(math.radians(center_lat))
    if abs(cos_center) < 1e-3:
        cos_center = 1e-3
    radius_deg_lat = radius_m / _METERS_PER_DEGREE_LAT
    radius_deg_lon = radius_m / (_METERS_PER_DEGREE_LAT * cos_center)

    lat_step = (2 * radius_deg_lat) / (rows - 1) if rows > 1 else 0.0
    lon_step = (2 * radius_deg_lon) / (cols - 1) if cols > 1 else 0.0
    start_lat = center_lat - radius_deg_lat if rows > 1 else center_lat
    start_lon = center_lon - radius_deg_lon if cols > 1 else center_lon

    tiles: List[Tile] = []
    for r in range(rows):
        for c in range(cols):
            is_outer = r == 0 or r == rows - 1 or c == 0 or c == cols - 1
            tiles.append(
                Tile(
                    tile_id=f"{r}-{c}",
                    lat=start_lat + r * lat_step,
                    lon=start_lon + c * lon_step,
                    radius_m=edge_radius if is_outer else tile_radius,
                    row=r,
                    col=c,
                    is_outer=is_outer,
                )
            )
    return tiles


def geohash_encode(lat: float, lon: float, precision: int = 7) -> str:
    if precision < 1:
        raise ValueError("precision must be >= 1")
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars: List[str] = []
    bits = 0
    bit_count = 0
    even = True
    while len(chars) < precision:
        rng, value = (lon_range, lon) if even else (lat_range, lat)
        mid = (rng[0] + rng[1]) / 2
        if value >= mid:
            bits = (bits << 1) | 1
            rng[0] = mid
        else:
            bits = bits << 1
            rng[1] = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(_GEOHASH_ALPHABET[bits])
            bits = 0
            bit_count = 0
    return "".join(chars)

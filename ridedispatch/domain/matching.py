"""
Nearest-Driver Candidate Selection
==================================

1. **Proximity query**   -- the driver index returns up to K drivers of the
   requested vehicle type within R km of the pickup, ascending by distance.
2. **Exclusion**         -- drivers already in ``attempted_drivers`` (declined,
   timed out, or cancelled on this ride) are dropped.
3. **Ordering**          -- strict ascending distance.  Equal distances keep
   the order the index produced them in (``sorted`` is stable), so the
   outcome is deterministic for a given index state.

Reservation filtering (drivers currently offered to another ride) is not
done here: it needs an atomic check-and-set against shared state, so the
dispatcher performs it per candidate while walking this list.

Spatial binning
---------------
The in-memory index buckets drivers into H3 hexagons and only scans the
disk of cells that can contain a point within R km.

Complexity
----------
* Exclusion + ordering:  O(K log K) for K candidates
* Cell cover:            O(k^2) cells for a disk of radius k
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

import h3

from .entities import Coordinates


@dataclass(frozen=True)
class Candidate:
    driver_id: int
    distance_km: float
    position: Coordinates


def eligible_candidates(
    candidates: Iterable[Candidate], excluded: Iterable[int]
) -> list[Candidate]:
    """Drop excluded drivers and order the rest nearest-first."""
    skip = set(excluded)
    eligible = [c for c in candidates if c.driver_id not in skip]
    return sorted(eligible, key=lambda c: c.distance_km)


def nearest_candidate(
    candidates: Iterable[Candidate], excluded: Iterable[int]
) -> Optional[Candidate]:
    eligible = eligible_candidates(candidates, excluded)
    return eligible[0] if eligible else None


def h3_cell(point: Coordinates, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(point.latitude, point.longitude, resolution)


def covering_cells(center: Coordinates, radius_km: float, resolution: int = 7) -> list[str]:
    """
    Cells whose hexagon may contain a point within ``radius_km`` of *center*.

    Neighbouring cell centres are at least ``1.5 x edge`` apart along the
    grid, and a point can sit up to one edge away from its own cell centre,
    so ``k = ceil((radius + 2 x edge) / (1.5 x edge))`` rings are enough.
    One extra ring absorbs the variation of edge length across the globe.
    """
    edge = h3.average_hexagon_edge_length(resolution, unit="km")
    k = math.ceil((radius_km + 2 * edge) / (1.5 * edge)) + 1
    return list(h3.grid_disk(h3_cell(center, resolution), k))

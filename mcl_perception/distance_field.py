# mcl_perception/distance_field.py
from __future__ import annotations

"""
Occupancy grid + clamped Euclidean distance field.

Grid layout:
  - cells[row, col], row indexes y, col indexes x
  - cell (row, col) covers [ox + col*res, ox + (col+1)*res) x [oy + row*res, oy + (row+1)*res)
  - world -> cell uses floor, so a point on a cell border belongs to the upper cell

Cell states follow the usual occupancy convention: FREE=-1, UNKNOWN=0, OCCUPIED=+1.

The distance field stores, per cell, the distance (m) from the cell center to
the nearest OCCUPIED cell center, clamped to max_occ_dist. Queries outside the
grid or outside the active bounds return max_occ_dist.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.ndimage import distance_transform_edt


class CellState(IntEnum):
    FREE = -1
    UNKNOWN = 0
    OCCUPIED = 1


@dataclass
class OccupancyGrid:
    cells: np.ndarray          # (H, W) int8 of CellState values
    resolution: float          # m / cell
    origin: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        cells = np.asarray(self.cells)
        if cells.ndim != 2 or cells.size == 0:
            raise ValueError(f"occupancy cells must be a non-empty 2D array, got shape {cells.shape}")
        if float(self.resolution) <= 0.0:
            raise ValueError(f"resolution must be > 0, got {self.resolution}")
        self.cells = cells.astype(np.int8, copy=False)
        self.resolution = float(self.resolution)
        self.origin = (float(self.origin[0]), float(self.origin[1]))

    @property
    def shape(self) -> Tuple[int, int]:
        return int(self.cells.shape[0]), int(self.cells.shape[1])

    @classmethod
    def from_probabilities(
        cls,
        data: np.ndarray,
        resolution: float,
        origin: Tuple[float, float] = (0.0, 0.0),
        free_thresh: float = 0.25,
        occupied_thresh: float = 0.65,
    ) -> "OccupancyGrid":
        """Classify a 0..100 occupancy grid (negative = unknown)."""
        data = np.asarray(data, dtype=float)
        cells = np.full(data.shape, CellState.UNKNOWN, dtype=np.int8)
        known = data >= 0.0
        p = np.where(known, data / 100.0, 0.0)
        cells[known & (p <= free_thresh)] = CellState.FREE
        cells[known & (p >= occupied_thresh)] = CellState.OCCUPIED
        return cls(cells=cells, resolution=resolution, origin=origin)

    @classmethod
    def from_voxels(
        cls,
        voxels: np.ndarray,
        resolution: float,
        origin: Sequence[float] = (0.0, 0.0, 0.0),
        z_min: float = -np.inf,
        z_max: float = np.inf,
    ) -> "OccupancyGrid":
        """Project a 3D voxel grid (X, Y, Z) of CellState values onto the plane.

        Only voxel layers whose center height lies inside [z_min, z_max] are
        used. A column is OCCUPIED if any voxel in the band is occupied, FREE
        if it has a free voxel and no occupied one, UNKNOWN otherwise.
        """
        voxels = np.asarray(voxels)
        if voxels.ndim != 3:
            raise ValueError(f"voxels must be a 3D array, got shape {voxels.shape}")
        oz = float(origin[2]) if len(origin) > 2 else 0.0
        z_centers = oz + (np.arange(voxels.shape[2]) + 0.5) * float(resolution)
        band = (z_centers >= z_min) & (z_centers <= z_max)
        sub = voxels[:, :, band]
        occ = np.any(sub == CellState.OCCUPIED, axis=2)
        free = np.any(sub == CellState.FREE, axis=2) & ~occ
        cells = np.full(occ.shape, CellState.UNKNOWN, dtype=np.int8)
        cells[free] = CellState.FREE
        cells[occ] = CellState.OCCUPIED
        # voxel axes are (x, y); the grid is indexed (row=y, col=x)
        return cls(cells=cells.T, resolution=resolution, origin=(origin[0], origin[1]))


class DistanceField:
    """Read-only distance/occupancy queries over one map snapshot."""

    def __init__(
        self,
        grid: OccupancyGrid,
        max_occ_dist: float,
        bounds_min: Optional[Sequence[float]] = None,
        bounds_max: Optional[Sequence[float]] = None,
    ):
        if max_occ_dist <= 0.0:
            raise ValueError(f"max_occ_dist must be > 0, got {max_occ_dist}")
        self.grid = grid
        self.resolution = grid.resolution
        self.origin = np.array(grid.origin, dtype=float)
        self.height, self.width = grid.shape
        self.max_occ_dist = float(max_occ_dist)

        occupied = grid.cells == CellState.OCCUPIED
        if np.any(occupied):
            dist = distance_transform_edt(~occupied) * self.resolution
            self.distances = np.minimum(dist, self.max_occ_dist)
        else:
            self.distances = np.full(grid.shape, self.max_occ_dist, dtype=float)
        self.distances.setflags(write=False)

        # unclamped distance to the nearest non-FREE cell; beyond the grid edge counts as non-free
        free = np.pad(grid.cells == CellState.FREE, 1, mode="constant", constant_values=False)
        self.clearances = distance_transform_edt(free)[1:-1, 1:-1] * self.resolution
        self.clearances.setflags(write=False)

        self._grid_min = self.origin.copy()
        self._grid_max = self.origin + np.array([self.width, self.height], dtype=float) * self.resolution
        self.bounds_min = self._grid_min.copy()
        self.bounds_max = self._grid_max.copy()
        self.external_bounds = False
        if bounds_min is not None and bounds_max is not None:
            self.set_bounds(bounds_min, bounds_max)

    # ------------------------------------------------------------------
    # bounds
    # ------------------------------------------------------------------

    def set_bounds(self, bounds_min: Sequence[float], bounds_max: Sequence[float]):
        """Constrain the field to an externally supplied box (extra dims ignored)."""
        lo = np.asarray(bounds_min, dtype=float).reshape(-1)[:2]
        hi = np.asarray(bounds_max, dtype=float).reshape(-1)[:2]
        if lo.shape[0] != 2 or hi.shape[0] != 2 or np.any(hi <= lo):
            raise ValueError(f"invalid bounds min={bounds_min} max={bounds_max}")
        self.bounds_min = np.maximum(lo, self._grid_min)
        self.bounds_max = np.minimum(hi, self._grid_max)
        self.external_bounds = True

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.bounds_min.copy(), self.bounds_max.copy()

    # ------------------------------------------------------------------
    # coordinates
    # ------------------------------------------------------------------

    def world_to_map(self, x, y) -> Tuple[np.ndarray, np.ndarray]:
        """Return (col, row) integer cell indices; may be outside the grid."""
        col = np.floor((np.asarray(x, dtype=float) - self.origin[0]) / self.resolution).astype(int)
        row = np.floor((np.asarray(y, dtype=float) - self.origin[1]) / self.resolution).astype(int)
        return col, row

    def map_to_world(self, col, row) -> Tuple[np.ndarray, np.ndarray]:
        """Cell centers in world coordinates."""
        x = self.origin[0] + (np.asarray(col, dtype=float) + 0.5) * self.resolution
        y = self.origin[1] + (np.asarray(row, dtype=float) + 0.5) * self.resolution
        return x, y

    def contains(self, x, y) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        col, row = self.world_to_map(x, y)
        in_grid = (col >= 0) & (col < self.width) & (row >= 0) & (row < self.height)
        in_bounds = (
            (x >= self.bounds_min[0]) & (x < self.bounds_max[0])
            & (y >= self.bounds_min[1]) & (y < self.bounds_max[1])
        )
        return in_grid & in_bounds

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def _flat(self, x, y):
        x, y = np.broadcast_arrays(np.asarray(x, dtype=float), np.asarray(y, dtype=float))
        return x.reshape(-1), y.reshape(-1), x.shape

    def distance(self, x, y) -> np.ndarray:
        """Clamped distance to the nearest occupied cell; off-map => max_occ_dist."""
        xf, yf, shape = self._flat(x, y)
        inside = self.contains(xf, yf)
        col, row = self.world_to_map(xf, yf)
        out = np.full(xf.shape, self.max_occ_dist, dtype=float)
        out[inside] = self.distances[row[inside], col[inside]]
        return out.reshape(shape)

    def clearance(self, x, y) -> np.ndarray:
        """Distance into free space: to the nearest occupied or unknown cell.

        0 in any non-free cell and off-map.
        """
        xf, yf, shape = self._flat(x, y)
        inside = self.contains(xf, yf)
        col, row = self.world_to_map(xf, yf)
        out = np.zeros(xf.shape, dtype=float)
        out[inside] = self.clearances[row[inside], col[inside]]
        return out.reshape(shape)

    def occupancy(self, x, y) -> np.ndarray:
        """CellState per point; off-map => UNKNOWN."""
        xf, yf, shape = self._flat(x, y)
        inside = self.contains(xf, yf)
        col, row = self.world_to_map(xf, yf)
        out = np.full(xf.shape, int(CellState.UNKNOWN), dtype=np.int8)
        out[inside] = self.grid.cells[row[inside], col[inside]]
        return out.reshape(shape)

    def free_space_indices(self) -> np.ndarray:
        """(K, 2) array of (col, row) for FREE cells whose centers are within bounds."""
        rows, cols = np.nonzero(self.grid.cells == CellState.FREE)
        if rows.size == 0:
            return np.zeros((0, 2), dtype=int)
        cx, cy = self.map_to_world(cols, rows)
        keep = self.contains(cx, cy)
        return np.stack([cols[keep], rows[keep]], axis=1)

    def raycast(self, x, y, angle, max_range: float) -> np.ndarray:
        """Expected range along each ray (vectorized over any broadcastable shape).

        Marches through the distance field: each step advances by the cell's
        clearance minus half a cell diagonal, and by at least half a cell. A
        ray stops at the first occupied cell, at the map edge (distance
        travelled so far) or at max_range.
        """
        x, y, angle = np.broadcast_arrays(
            np.asarray(x, dtype=float), np.asarray(y, dtype=float), np.asarray(angle, dtype=float)
        )
        max_range = float(max_range)
        dx = np.cos(angle)
        dy = np.sin(angle)
        t = np.zeros(x.shape, dtype=float)
        active = np.ones(x.shape, dtype=bool)

        hit_eps = 0.5 * self.resolution
        min_step = 0.5 * self.resolution
        slack = 0.5 * np.sqrt(2.0) * self.resolution
        max_iter = int(np.ceil(max_range / min_step)) + 2

        for _ in range(max_iter):
            if not np.any(active):
                break
            px = x + t * dx
            py = y + t * dy
            inside = self.contains(px, py)
            d = self.distance(px, py)
            stop = active & (~inside | (d < hit_eps))
            active &= ~stop
            t = np.where(active, t + np.maximum(d - slack, min_step), t)
            done = active & (t >= max_range)
            active &= ~done
        return np.minimum(t, max_range)

# mcl_perception/map_factors.py
from __future__ import annotations

import numpy as np

from .config import MapFactors
from .distance_field import CellState, DistanceField


class MapFactorPolicy:
    """Multiplicative weight penalty from where a pose sits on the map.

      - outside the map bounds           -> off_map_factor
      - inside, clearance d to the nearest non-free (occupied or unknown) cell:
            f = nfs + (1 - nfs) * min(1, d / radius)
        with d = 0 in any non-free cell, so f = nfs there and f = 1.0 once the
        pose is `radius` or more into free space.
      - radius <= 0: 1.0 in free cells, nfs elsewhere

    The policy is stateless apart from the factor triple; the orchestrator swaps
    in a different triple while global localization is active.
    """

    def __init__(self, factors: MapFactors):
        self.factors = factors

    def penalty(self, field: DistanceField, poses: np.ndarray) -> np.ndarray:
        poses = np.atleast_2d(np.asarray(poses, dtype=float))
        x = poses[:, 0]
        y = poses[:, 1]
        f = self.factors

        inside = field.contains(x, y)
        free = field.occupancy(x, y) == CellState.FREE
        clearance = field.clearance(x, y)

        nfs = float(f.non_free_space_factor)
        radius = float(f.non_free_space_radius)
        if radius > 0.0:
            frac = np.minimum(1.0, clearance / radius)
            on_map = nfs + (1.0 - nfs) * frac
        else:
            on_map = np.where(free, 1.0, nfs)

        return np.where(inside, on_map, float(f.off_map_factor))

    def penalty_at(self, field: DistanceField, x: float, y: float) -> float:
        return float(self.penalty(field, np.array([[x, y, 0.0]]))[0])

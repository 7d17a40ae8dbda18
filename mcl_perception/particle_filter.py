# mcl_perception/particle_filter.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import math
import numpy as np

from .datatypes import SampleSet, wrap_pi, wrap_pi_np


@dataclass
class PFConfig:
    """Reference engine configuration."""
    num_samples: int = 500
    converged_dist: float = 0.5   # [m] every sample within this of the mean (x and y) => converged
    seed: int = 0


class ParticleFilter:
    """
    Minimal particle-filter engine the orchestrator drives:
      - owns the SampleSet (poses + weights)
      - systematic resampling
      - convergence signal used to end global localization
      - weighted mean estimate (circular mean for yaw)

    Prediction from odometry lives elsewhere; this engine never moves samples
    except through set_samples / resample.
    """

    def __init__(self, cfg: PFConfig | None = None, samples: Optional[SampleSet] = None):
        self.cfg = cfg or PFConfig()
        self.rng = np.random.default_rng(int(self.cfg.seed))
        if samples is None:
            n = int(self.cfg.num_samples)
            samples = SampleSet(np.zeros((n, 3)), np.full(n, 1.0 / max(1, n)))
        self._samples = samples
        self.resample_count = 0

    @property
    def sample_set(self) -> SampleSet:
        return self._samples

    @property
    def num_samples(self) -> int:
        return int(self.cfg.num_samples)

    def set_samples(self, poses: np.ndarray, weights: Optional[np.ndarray] = None):
        poses = np.array(poses, dtype=float, copy=True)
        poses[:, 2] = wrap_pi_np(poses[:, 2])
        self._samples = SampleSet(poses, weights)

    # ------------------------------------------------------------------
    # resampling & estimate
    # ------------------------------------------------------------------

    def resample(self):
        """Systematic resampling; weights become uniform."""
        s = self._samples
        n = len(s)
        if n == 0:
            return
        total = s.total_weight()
        if total <= 0.0:
            return
        positions = (self.rng.random() + np.arange(n)) / n
        cumsum_w = np.cumsum(s.weights / total)
        cumsum_w[-1] = 1.0
        idx = np.searchsorted(cumsum_w, positions, side="right")
        idx = np.minimum(idx, n - 1)

        self._samples = SampleSet(s.poses[idx], np.full(n, 1.0 / n))
        self.resample_count += 1

    def estimate(self) -> np.ndarray:
        """Weighted mean pose; yaw uses circular mean."""
        s = self._samples
        w = s.weights
        if len(s) == 0 or float(np.sum(w)) <= 0.0:
            w = np.ones(len(s))
        if len(s) == 0:
            return np.zeros(3)
        xp = s.poses
        px = float(np.average(xp[:, 0], weights=w))
        py = float(np.average(xp[:, 1], weights=w))
        sn = float(np.sum(w * np.sin(xp[:, 2])))
        cs = float(np.sum(w * np.cos(xp[:, 2])))
        yaw = wrap_pi(math.atan2(sn, cs))
        return np.array([px, py, yaw], dtype=float)

    def converged(self) -> bool:
        s = self._samples
        if len(s) == 0:
            return False
        mean = self.estimate()
        dx = np.abs(s.poses[:, 0] - mean[0])
        dy = np.abs(s.poses[:, 1] - mean[1])
        thr = float(self.cfg.converged_dist)
        return bool(np.all(dx <= thr) and np.all(dy <= thr))

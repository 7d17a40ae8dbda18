# mcl_perception/datatypes.py
from __future__ import annotations

"""
================================================================================
mcl_perception.datatypes: POSE / SCAN CONVENTIONS
================================================================================

Shared by the sensor model, the orchestrator and the reference engine.

Pose:
    - (x, y, yaw) as a float array of shape (3,), map frame.
    - x, y in meters; yaw in radians, 0 at +x, counter-clockwise positive,
      wrapped to [-pi, pi).

Sample set:
    - poses:   (N, 3) float array, one row per particle
    - weights: (N,)   float array, always >= 0
    - The sensor model rewrites weights only. Poses are written by the engine
      (set_samples / resample) and never by scoring.

Range scan:
    - ranges[i] / bearings[i] describe beam i; bearing is relative to the
      scanner heading.
    - scanner_pose is the scanner offset in the robot (base) frame.
    - A beam is valid when range_min <= r <= range_max and r is finite.
    - Arrays are frozen (read-only) once the scan is constructed.
================================================================================
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence
import math

import numpy as np

from .errors import SensorDataInvalid

FrameId = str
Stamp = float


def wrap_pi(a: float) -> float:
    return (float(a) + math.pi) % (2.0 * math.pi) - math.pi


def wrap_pi_np(a: np.ndarray) -> np.ndarray:
    """Vectorized wrap to [-pi, pi)."""
    return (a + np.pi) % (2.0 * np.pi) - np.pi


def as_pose(p: Sequence[float]) -> np.ndarray:
    arr = np.asarray(p, dtype=float).reshape(-1)
    if arr.shape[0] != 3:
        raise ValueError(f"pose must have 3 components (x, y, yaw), got {arr.shape[0]}")
    return arr


def compose_poses(poses: np.ndarray, offset: np.ndarray) -> np.ndarray:
    """Apply a robot-frame offset to every pose row: poses ⊕ offset."""
    poses = np.atleast_2d(poses)
    c = np.cos(poses[:, 2])
    s = np.sin(poses[:, 2])
    out = np.empty_like(poses, dtype=float)
    out[:, 0] = poses[:, 0] + c * offset[0] - s * offset[1]
    out[:, 1] = poses[:, 1] + s * offset[0] + c * offset[1]
    out[:, 2] = wrap_pi_np(poses[:, 2] + offset[2])
    return out


@dataclass
class Particle:
    """One pose hypothesis; a copy, not a view into the sample set."""
    x: float
    y: float
    yaw: float
    weight: float = 1.0

    @property
    def pose(self) -> np.ndarray:
        return np.array([self.x, self.y, self.yaw], dtype=float)


class SampleSet:
    """Ordered weighted pose population, stored column-wise."""

    def __init__(self, poses: np.ndarray, weights: Optional[np.ndarray] = None):
        poses = np.array(poses, dtype=float, copy=True)
        if poses.ndim != 2 or poses.shape[1] != 3:
            raise ValueError(f"poses must have shape (N, 3), got {poses.shape}")
        n = poses.shape[0]
        if weights is None:
            weights = np.full(n, 1.0 / n if n else 0.0)
        weights = np.array(weights, dtype=float, copy=True).reshape(-1)
        if weights.shape[0] != n:
            raise ValueError(f"weights length {weights.shape[0]} != sample count {n}")
        if np.any(weights < 0.0):
            raise ValueError("weights must be non-negative")
        self.poses = poses
        self.weights = weights

    @classmethod
    def from_particles(cls, particles: Sequence[Particle]) -> "SampleSet":
        poses = np.array([[p.x, p.y, p.yaw] for p in particles], dtype=float).reshape(-1, 3)
        weights = np.array([p.weight for p in particles], dtype=float)
        return cls(poses, weights)

    def __len__(self) -> int:
        return int(self.poses.shape[0])

    def __iter__(self) -> Iterator[Particle]:
        for (x, y, yaw), w in zip(self.poses, self.weights):
            yield Particle(float(x), float(y), float(yaw), float(w))

    def total_weight(self) -> float:
        return float(np.sum(self.weights))

    def normalize(self) -> float:
        """Divide weights by their sum; returns the sum. A zero sum is left untouched."""
        total = self.total_weight()
        if total > 0.0:
            self.weights /= total
        return total


@dataclass(frozen=True)
class RangeScan:
    ranges: np.ndarray
    bearings: np.ndarray
    range_max: float
    scanner_pose: np.ndarray = field(default_factory=lambda: np.zeros(3))
    frame_id: FrameId = "scanner"
    stamp: Stamp = 0.0
    range_min: float = 0.0

    def __post_init__(self):
        ranges = np.array(self.ranges, dtype=float, copy=True).reshape(-1)
        bearings = np.array(self.bearings, dtype=float, copy=True).reshape(-1)
        pose = np.array(self.scanner_pose, dtype=float, copy=True).reshape(-1)
        for arr in (ranges, bearings, pose):
            arr.setflags(write=False)
        object.__setattr__(self, "ranges", ranges)
        object.__setattr__(self, "bearings", bearings)
        object.__setattr__(self, "scanner_pose", pose)
        object.__setattr__(self, "range_max", float(self.range_max))
        object.__setattr__(self, "range_min", float(self.range_min))
        object.__setattr__(self, "stamp", float(self.stamp))

    def __len__(self) -> int:
        return int(self.ranges.shape[0])

    def with_scanner_pose(self, pose: Sequence[float]) -> "RangeScan":
        return RangeScan(
            ranges=self.ranges,
            bearings=self.bearings,
            range_max=self.range_max,
            scanner_pose=as_pose(pose),
            frame_id=self.frame_id,
            stamp=self.stamp,
            range_min=self.range_min,
        )

    def validate(self) -> None:
        """Raise SensorDataInvalid for scans that cannot be scored at all."""
        if self.ranges.shape[0] == 0:
            raise SensorDataInvalid(f"empty scan from frame '{self.frame_id}'")
        if self.ranges.shape != self.bearings.shape:
            raise SensorDataInvalid(
                f"scan from '{self.frame_id}' has {self.ranges.shape[0]} ranges "
                f"but {self.bearings.shape[0]} bearings"
            )
        if not np.all(np.isfinite(self.bearings)):
            raise SensorDataInvalid(f"non-finite bearing in scan from '{self.frame_id}'")
        if not math.isfinite(self.range_max) or self.range_max <= 0.0:
            raise SensorDataInvalid(f"invalid range_max {self.range_max} from '{self.frame_id}'")
        if self.scanner_pose.shape[0] != 3 or not np.all(np.isfinite(self.scanner_pose)):
            raise SensorDataInvalid(f"invalid scanner pose for '{self.frame_id}'")

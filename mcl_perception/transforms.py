# mcl_perception/transforms.py
from __future__ import annotations

import bisect
import time
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from .datatypes import as_pose
from .errors import TransformUnavailable


class TransformBuffer:
    """
    Scanner-frame -> base-frame poses, keyed by frame id.

    - set_static(frame, pose): valid for every stamp
    - add(frame, stamp, pose): stamped entry; lookup returns the latest entry
      with entry_stamp <= stamp
    - lookup(frame, stamp, timeout): polls until an answer exists or the
      timeout elapses, then raises TransformUnavailable. timeout=0 checks once.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_period: float = 0.005,
    ):
        self._static: Dict[str, np.ndarray] = {}
        self._stamped: Dict[str, Tuple[List[float], List[np.ndarray]]] = {}
        self._clock = clock
        self._sleep = sleep
        self.poll_period = float(poll_period)

    def set_static(self, frame_id: str, pose: Sequence[float]):
        self._static[str(frame_id)] = as_pose(pose)

    def add(self, frame_id: str, stamp: float, pose: Sequence[float]):
        stamps, poses = self._stamped.setdefault(str(frame_id), ([], []))
        i = bisect.bisect_right(stamps, float(stamp))
        stamps.insert(i, float(stamp))
        poses.insert(i, as_pose(pose))

    def can_transform(self, frame_id: str, stamp: float) -> bool:
        return self._find(frame_id, stamp) is not None

    def _find(self, frame_id: str, stamp: float):
        pose = self._static.get(frame_id)
        if pose is not None:
            return pose
        entry = self._stamped.get(frame_id)
        if entry is None:
            return None
        stamps, poses = entry
        i = bisect.bisect_right(stamps, float(stamp))
        if i == 0:
            return None
        return poses[i - 1]

    def lookup(self, frame_id: str, stamp: float, timeout: float) -> np.ndarray:
        deadline = self._clock() + max(0.0, float(timeout))
        while True:
            pose = self._find(frame_id, stamp)
            if pose is not None:
                return pose.copy()
            if self._clock() >= deadline:
                raise TransformUnavailable(frame_id, timeout)
            self._sleep(self.poll_period)

# mcl_perception/scanner_registry.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np

from .config import ScannerConfig
from .sensor_model import RangeScanSensorModel


@dataclass
class PlanarScanner:
    """Per-frame scanner state; lives for the whole process once registered."""
    handle: int
    frame_id: str
    pose: np.ndarray                 # scanner offset in the base frame (x, y, yaw)
    config: ScannerConfig
    model: RangeScanSensorModel = field(default_factory=RangeScanSensorModel)
    # set when the robot moved enough; cleared after this scanner integrates
    needs_update: bool = True
    scans_seen: int = 0
    scans_integrated: int = 0


class ScannerRegistry:
    """
    frame id -> integer handle -> PlanarScanner.

    Handles are assigned in order of first sight and never reused; scanner
    state is kept in a dense list indexed by handle.
    """

    def __init__(self):
        self._handles: Dict[str, int] = {}
        self._scanners: List[PlanarScanner] = []

    def __len__(self) -> int:
        return len(self._scanners)

    def __iter__(self) -> Iterator[PlanarScanner]:
        return iter(self._scanners)

    def __contains__(self, frame_id: str) -> bool:
        return frame_id in self._handles

    def handle_of(self, frame_id: str) -> Optional[int]:
        return self._handles.get(frame_id)

    def get(self, handle: int) -> PlanarScanner:
        return self._scanners[handle]

    def lookup(self, frame_id: str) -> Optional[PlanarScanner]:
        h = self._handles.get(frame_id)
        return None if h is None else self._scanners[h]

    def resolve(
        self,
        frame_id: str,
        make_pose: Callable[[str], np.ndarray],
        config: ScannerConfig,
    ) -> tuple[PlanarScanner, bool]:
        """Return (scanner, created).

        make_pose is only called for unseen frames; if it raises, nothing is
        registered and the next arrival from that frame tries again.
        """
        h = self._handles.get(frame_id)
        if h is not None:
            return self._scanners[h], False
        pose = np.asarray(make_pose(frame_id), dtype=float)
        scanner = PlanarScanner(
            handle=len(self._scanners),
            frame_id=frame_id,
            pose=pose,
            config=config,
        )
        self._scanners.append(scanner)
        self._handles[frame_id] = scanner.handle
        return scanner, True

    def mark_all_for_update(self):
        for s in self._scanners:
            s.needs_update = True

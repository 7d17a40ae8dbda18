# mcl_perception/events.py
from __future__ import annotations

"""
Event reports for the perception-update loop.

Every report is a flat dict:
    {type: "event", kind, stamp, ts_wall, ...detail}

  - kind:    one of the EVENT_* names below
  - stamp:   time on the scan/clock axis of the caller (seconds)
  - ts_wall: wall clock at emission

Reports are counted per kind, kept in a bounded in-memory list, and
optionally appended to a JSON-lines file (one record per line, flush+fsync).
Reporting never raises into the perception loop for a serializable record.
"""

from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional
import json
import os
import time

EVENT_SENSOR_DATA_INVALID = "sensor_data_invalid"
EVENT_MAP_NOT_READY = "map_not_ready"
EVENT_TRANSFORM_UNAVAILABLE = "transform_unavailable"
EVENT_ALL_WEIGHTS_ZERO = "all_weights_zero"
EVENT_BEAM_SKIP_FALLBACK = "beam_skip_fallback"
EVENT_STALE_SCAN = "stale_scan"
EVENT_MAP_RECEIVED = "map_received"
EVENT_MAP_IGNORED = "map_ignored"
EVENT_RESAMPLED = "resampled"
EVENT_GLOBAL_LOC_STARTED = "global_localization_started"
EVENT_GLOBAL_LOC_CONVERGED = "global_localization_converged"
EVENT_SCANNER_REGISTERED = "scanner_registered"
EVENT_RECONFIGURED = "reconfigured"

# kinds that describe a degraded outcome rather than normal progress
DEGRADED_KINDS = frozenset({
    EVENT_SENSOR_DATA_INVALID,
    EVENT_MAP_NOT_READY,
    EVENT_TRANSFORM_UNAVAILABLE,
    EVENT_ALL_WEIGHTS_ZERO,
    EVENT_BEAM_SKIP_FALLBACK,
    EVENT_STALE_SCAN,
})


class EventRecorder:
    def __init__(
        self,
        jsonl_path: Optional[str] = None,
        verbose: bool = False,
        max_events: int = 1024,
    ):
        self.verbose = bool(verbose)
        self.counts: Dict[str, int] = {}
        self.events: Deque[Dict[str, Any]] = deque(maxlen=int(max_events))
        self._path: Optional[Path] = None
        if jsonl_path is not None:
            self._path = Path(jsonl_path)
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def emit(self, kind: str, stamp: float | None = None, **detail) -> Dict[str, Any]:
        rec: Dict[str, Any] = {
            "type": "event",
            "kind": str(kind),
            "stamp": None if stamp is None else float(stamp),
            "ts_wall": time.time(),
        }
        rec.update(detail)

        self.counts[kind] = self.counts.get(kind, 0) + 1
        self.events.append(rec)
        if self._path is not None:
            self._append_jsonl(rec)
        if self.verbose:
            extras = " ".join(f"{k}={v}" for k, v in detail.items())
            print(f"[mcl] {kind} stamp={rec['stamp']} {extras}".rstrip())
        return rec

    def count(self, kind: str) -> int:
        return self.counts.get(kind, 0)

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["kind"] == kind]

    def degraded_count(self) -> int:
        return sum(v for k, v in self.counts.items() if k in DEGRADED_KINDS)

    def _append_jsonl(self, obj: Dict[str, Any]) -> None:
        line = json.dumps(obj, ensure_ascii=False, default=self._json_default)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _json_default(obj: Any) -> Any:
        import numpy as np
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if hasattr(obj, "__dict__"):
            return obj.__dict__
        return str(obj)

# mcl_perception/errors.py
from __future__ import annotations


class LocalizationError(Exception):
    """Base class for recoverable perception-update failures.

    Every subclass carries a ``kind`` string that the orchestrator uses as the
    event kind when it turns the exception into a report.
    """

    kind = "localization_error"


class SensorDataInvalid(LocalizationError):
    """Scan is empty or malformed; it is discarded without state change."""

    kind = "sensor_data_invalid"


class MapNotReady(LocalizationError):
    """No distance field has been built yet."""

    kind = "map_not_ready"


class TransformUnavailable(LocalizationError):
    """Bounded wait for a frame transform timed out."""

    kind = "transform_unavailable"

    def __init__(self, frame_id: str, timeout: float):
        super().__init__(f"transform for frame '{frame_id}' unavailable after {timeout:.3f}s")
        self.frame_id = frame_id
        self.timeout = float(timeout)

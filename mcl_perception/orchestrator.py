# mcl_perception/orchestrator.py
from __future__ import annotations

"""
ScanIntegrationOrchestrator: per-event driver of the perception update.

States:
    WAITING_FOR_MAP -> WAITING_FOR_FIRST_SCAN -> TRACKING <-> GLOBAL_LOCALIZATION

Events (delivered one at a time by the caller's dispatch loop):
    handle_map(grid)           rebuild the distance field + free-space index set
    set_map_bounds(lo, hi)     externally supplied map bounds
    handle_scan(scan, odom)    maybe integrate, maybe resample
    check_scan_received(now)   stale-scan watchdog (report only)
    global_localization()      spread samples over free space
    reconfigure(**options)     install a new configuration snapshot

Each event reads one configuration snapshot at its start. The distance field
is owned here and only lent to the sensor model for the duration of a call.
"""

from dataclasses import replace
from enum import Enum
from typing import Callable, Optional, Sequence
import math
import time

import numpy as np

from .config import ConfigStore, LocalizerConfig, MapFactors, ModelType
from .datatypes import RangeScan, SampleSet, as_pose, wrap_pi
from .distance_field import DistanceField, OccupancyGrid
from .errors import LocalizationError, MapNotReady, SensorDataInvalid, TransformUnavailable
from .events import (
    EVENT_ALL_WEIGHTS_ZERO,
    EVENT_BEAM_SKIP_FALLBACK,
    EVENT_GLOBAL_LOC_CONVERGED,
    EVENT_GLOBAL_LOC_STARTED,
    EVENT_MAP_IGNORED,
    EVENT_MAP_RECEIVED,
    EVENT_RECONFIGURED,
    EVENT_RESAMPLED,
    EVENT_SCANNER_REGISTERED,
    EVENT_STALE_SCAN,
    EventRecorder,
)
from .particle_filter import ParticleFilter
from .scanner_registry import PlanarScanner, ScannerRegistry
from .sensor_model import RangeScanSensorModel
from .transforms import TransformBuffer


class LocalizerState(str, Enum):
    WAITING_FOR_MAP = "waiting_for_map"
    WAITING_FOR_FIRST_SCAN = "waiting_for_first_scan"
    TRACKING = "tracking"
    GLOBAL_LOCALIZATION = "global_localization"


class ScanIntegrationOrchestrator:
    def __init__(
        self,
        engine: ParticleFilter,
        config: LocalizerConfig | ConfigStore | None = None,
        transforms: Optional[TransformBuffer] = None,
        recorder: Optional[EventRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        seed: int = 0,
    ):
        self.engine = engine
        self.config_store = config if isinstance(config, ConfigStore) else ConfigStore(config)
        self.transforms = transforms if transforms is not None else TransformBuffer()
        self.recorder = recorder if recorder is not None else EventRecorder()
        self._clock = clock
        self.rng = np.random.default_rng(int(seed))

        self.state = LocalizerState.WAITING_FOR_MAP
        self.registry = ScannerRegistry()

        # map
        self._grid: Optional[OccupancyGrid] = None
        self._pending_grid: Optional[OccupancyGrid] = None
        self._field: Optional[DistanceField] = None
        self._free_space = np.zeros((0, 2), dtype=int)
        self._bounds_min: Optional[np.ndarray] = None
        self._bounds_max: Optional[np.ndarray] = None
        self.maps_received = 0

        # cycle state
        self.latest_scan: Optional[RangeScan] = None
        self.latest_scan_received_ts: Optional[float] = None
        self._started_ts = float(self._clock())
        self.resample_count = 0
        self.force_update = False
        self.last_total_weight: Optional[float] = None
        self._odom_ref: Optional[np.ndarray] = None

        # global localization
        self.global_localization_active = False

        # one-sample set used by score_pose; never touches the engine's samples
        self._fake_samples = SampleSet(np.zeros((1, 3)), np.ones(1))
        self._pose_model = RangeScanSensorModel()

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------

    @property
    def config(self) -> LocalizerConfig:
        return self.config_store.snapshot()

    @property
    def field(self) -> Optional[DistanceField]:
        return self._field

    @property
    def free_space_indices(self) -> np.ndarray:
        return self._free_space

    def active_factors(self, cfg: LocalizerConfig) -> MapFactors:
        if self.global_localization_active:
            return cfg.global_localization_factors
        return cfg.map_factors

    def _report(self, err: LocalizationError, stamp: float | None, **detail):
        self.recorder.emit(err.kind, stamp, message=str(err), **detail)

    # ------------------------------------------------------------------
    # map events
    # ------------------------------------------------------------------

    def set_map_bounds(self, bounds_min: Sequence[float], bounds_max: Sequence[float], stamp: float | None = None):
        """Externally supplied bounds for map sources that cannot report their own."""
        self._bounds_min = np.asarray(bounds_min, dtype=float).reshape(-1)
        self._bounds_max = np.asarray(bounds_max, dtype=float).reshape(-1)
        if self._pending_grid is not None:
            grid, self._pending_grid = self._pending_grid, None
            self._init_from_map(grid, self.config_store.snapshot(), stamp)
        elif self._field is not None:
            self._field.set_bounds(self._bounds_min, self._bounds_max)
            self._free_space = self._field.free_space_indices()

    def handle_map(self, grid: OccupancyGrid, stamp: float | None = None) -> bool:
        """Returns True when the map was turned into the active distance field."""
        cfg = self.config_store.snapshot()
        if cfg.first_map_only and self._grid is not None:
            self.recorder.emit(EVENT_MAP_IGNORED, stamp, reason="first_map_only")
            return False
        if cfg.wait_for_external_bounds and self._bounds_min is None:
            self._pending_grid = grid
            self.recorder.emit(EVENT_MAP_IGNORED, stamp, reason="waiting_for_bounds")
            return False
        self._init_from_map(grid, cfg, stamp)
        return True

    def handle_voxel_map(
        self,
        voxels: np.ndarray,
        resolution: float,
        origin: Sequence[float] = (0.0, 0.0, 0.0),
        stamp: float | None = None,
    ) -> bool:
        """3D map source: keep the layers within scanner_height +- tolerance."""
        cfg = self.config_store.snapshot()
        grid = OccupancyGrid.from_voxels(
            voxels,
            resolution,
            origin,
            z_min=cfg.scanner_height - cfg.scanner_height_tolerance,
            z_max=cfg.scanner_height + cfg.scanner_height_tolerance,
        )
        return self.handle_map(grid, stamp)

    def _init_from_map(self, grid: OccupancyGrid, cfg: LocalizerConfig, stamp: float | None):
        self._grid = grid
        self._field = self._build_field(grid, cfg)
        self._free_space = self._field.free_space_indices()
        self.maps_received += 1

        if self.state == LocalizerState.WAITING_FOR_MAP:
            self.state = LocalizerState.WAITING_FOR_FIRST_SCAN
        else:
            self.force_update = True

        self.recorder.emit(
            EVENT_MAP_RECEIVED,
            stamp,
            width=self._field.width,
            height=self._field.height,
            resolution=self._field.resolution,
            free_cells=int(self._free_space.shape[0]),
        )

    def _build_field(self, grid: OccupancyGrid, cfg: LocalizerConfig) -> DistanceField:
        return DistanceField(grid, cfg.scanner.max_occ_dist, self._bounds_min, self._bounds_max)

    def _refresh_field(self, cfg: LocalizerConfig):
        # a reconfigured clamp distance needs a new field
        if self._field is None or self._grid is None:
            return
        if not math.isclose(self._field.max_occ_dist, cfg.scanner.max_occ_dist):
            self._field = self._build_field(self._grid, cfg)
            self._free_space = self._field.free_space_indices()

    # ------------------------------------------------------------------
    # scan events
    # ------------------------------------------------------------------

    def _scanner_pose(self, scan: RangeScan, cfg: LocalizerConfig) -> np.ndarray:
        if scan.frame_id == cfg.base_frame_id:
            return np.zeros(3)
        return self.transforms.lookup(scan.frame_id, scan.stamp, cfg.transform_timeout)

    def _accumulate_motion(self, odom: np.ndarray, cfg: LocalizerConfig):
        if self._odom_ref is None:
            self._odom_ref = odom
            return
        d = math.hypot(odom[0] - self._odom_ref[0], odom[1] - self._odom_ref[1])
        a = abs(wrap_pi(odom[2] - self._odom_ref[2]))
        if d > cfg.update_min_d or a > cfg.update_min_a:
            self.registry.mark_all_for_update()
            self._odom_ref = odom

    def handle_scan(
        self,
        scan: RangeScan,
        odom_pose: Optional[Sequence[float]] = None,
        now: Optional[float] = None,
    ) -> Optional[float]:
        """Process one scan.

        Returns the total sample weight of the integration (0.0 on total model
        failure) or None when the scan was not integrated.
        """
        cfg = self.config_store.snapshot()
        now = float(self._clock()) if now is None else float(now)

        try:
            scan.validate()
        except SensorDataInvalid as e:
            self._report(e, scan.stamp, frame_id=scan.frame_id)
            return None

        self.latest_scan_received_ts = now
        if odom_pose is not None:
            self._accumulate_motion(as_pose(odom_pose), cfg)

        if self._field is None:
            self.latest_scan = scan
            self._report(MapNotReady("scan received before first map"), scan.stamp, frame_id=scan.frame_id)
            return None
        self._refresh_field(cfg)

        try:
            scanner, created = self.registry.resolve(
                scan.frame_id, lambda _f: self._scanner_pose(scan, cfg), cfg.scanner
            )
        except TransformUnavailable as e:
            self._report(e, scan.stamp, frame_id=scan.frame_id)
            return None
        if created:
            self.recorder.emit(
                EVENT_SCANNER_REGISTERED, scan.stamp,
                frame_id=scanner.frame_id, handle=scanner.handle, pose=scanner.pose,
            )

        scanner.config = cfg.scanner
        scanner.scans_seen += 1
        scan = scan.with_scanner_pose(scanner.pose)
        self.latest_scan = scan

        first = self.state == LocalizerState.WAITING_FOR_FIRST_SCAN
        if not (first or self.force_update or scanner.needs_update):
            return None
        return self._integrate(scan, scanner, cfg)

    def _integrate(self, scan: RangeScan, scanner: PlanarScanner, cfg: LocalizerConfig) -> float:
        samples = self.engine.sample_set
        prior = samples.weights.copy()

        total = scanner.model.score(scan, samples, scanner.config, self._field, self.active_factors(cfg))
        stats = scanner.model.last_stats
        if stats.get("beam_skip_fallback"):
            self.recorder.emit(
                EVENT_BEAM_SKIP_FALLBACK, scan.stamp,
                frame_id=scanner.frame_id,
                skip_fraction=stats.get("skip_fraction"),
                error_threshold=scanner.config.beam_skip.error_threshold,
            )

        scanner.needs_update = False
        scanner.scans_integrated += 1
        self.force_update = False
        self.last_total_weight = total

        if total <= 0.0:
            samples.weights[:] = prior
            self.recorder.emit(
                EVENT_ALL_WEIGHTS_ZERO, scan.stamp,
                frame_id=scanner.frame_id, samples=len(samples),
            )
            return 0.0

        samples.normalize()
        if self.state == LocalizerState.WAITING_FOR_FIRST_SCAN:
            self.state = LocalizerState.TRACKING

        self.resample_count += 1
        interval = int(cfg.resample_interval)
        if interval >= 1 and self.resample_count >= interval:
            self.engine.resample()
            self.resample_count = 0
            self.recorder.emit(EVENT_RESAMPLED, scan.stamp, samples=len(self.engine.sample_set))

        if self.global_localization_active and self.engine.converged():
            self.notify_converged(scan.stamp)
        return total

    # ------------------------------------------------------------------
    # watchdog
    # ------------------------------------------------------------------

    def check_scan_received(self, now: Optional[float] = None) -> bool:
        """True (and a stale_scan report) when no scan arrived within scanner_check_interval."""
        cfg = self.config_store.snapshot()
        now = float(self._clock()) if now is None else float(now)
        ref = self.latest_scan_received_ts
        if ref is None:
            ref = self._started_ts
        elapsed = now - ref
        if elapsed > cfg.scanner_check_interval:
            self.recorder.emit(
                EVENT_STALE_SCAN, now,
                elapsed=elapsed,
                interval=cfg.scanner_check_interval,
                ever_received=self.latest_scan_received_ts is not None,
            )
            return True
        return False

    # ------------------------------------------------------------------
    # global localization
    # ------------------------------------------------------------------

    def global_localization(self, stamp: float | None = None) -> bool:
        if self._field is None:
            self._report(MapNotReady("global localization requested before first map"), stamp)
            return False
        free = self._free_space
        if free.shape[0] == 0:
            self._report(MapNotReady("map has no free cells to sample from"), stamp)
            return False
        n = int(self.engine.num_samples)
        if n <= 0:
            self._report(LocalizationError("engine holds no samples to redistribute"), stamp)
            return False

        res = self._field.resolution
        pick = self.rng.integers(0, free.shape[0], size=n)
        cx, cy = self._field.map_to_world(free[pick, 0], free[pick, 1])
        jitter = self.rng.uniform(-0.5, 0.5, size=(n, 2)) * res
        yaw = self.rng.uniform(-math.pi, math.pi, size=n)
        poses = np.column_stack([cx + jitter[:, 0], cy + jitter[:, 1], yaw])
        self.engine.set_samples(poses, np.full(n, 1.0 / n))

        self.global_localization_active = True
        self.state = LocalizerState.GLOBAL_LOCALIZATION
        self.force_update = True
        self.resample_count = 0
        self.registry.mark_all_for_update()
        self.recorder.emit(EVENT_GLOBAL_LOC_STARTED, stamp, samples=n, free_cells=int(free.shape[0]))
        return True

    def request_nomotion_update(self):
        """Integrate the next scan of every scanner even if the robot has not moved."""
        self.force_update = True
        self.registry.mark_all_for_update()

    def notify_converged(self, stamp: float | None = None):
        """Engine convergence signal: leave global localization."""
        if not self.global_localization_active:
            return
        self.global_localization_active = False
        self.state = LocalizerState.TRACKING
        self.recorder.emit(EVENT_GLOBAL_LOC_CONVERGED, stamp, estimate=self.engine.estimate())

    def score_pose(self, pose: Sequence[float]) -> float:
        """Gompertz-reshaped likelihood of one pose against the latest scan.

        Always evaluated as the likelihood-field mean passed through
        apply_gompertz with the scanner's Gompertz parameters, whatever model
        the filter itself is configured with, then scaled by the active map
        factors. Values are comparable across poses for one scan.
        """
        cfg = self.config_store.snapshot()
        if self._field is None:
            raise MapNotReady("cannot score a pose without a map")
        if self.latest_scan is None:
            raise SensorDataInvalid("no scan received yet")
        self._refresh_field(cfg)

        scan = self.latest_scan
        scanner = self.registry.lookup(scan.frame_id)
        if scanner is not None:
            scan = scan.with_scanner_pose(scanner.pose)

        fake = self._fake_samples
        fake.poses[0] = as_pose(pose)
        fake.weights[0] = 1.0
        scanner_cfg = replace(cfg.scanner, model_type=ModelType.LIKELIHOOD_FIELD_GOMPERTZ)
        return self._pose_model.score(scan, fake, scanner_cfg, self._field, self.active_factors(cfg))

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------

    def reconfigure(self, **options) -> LocalizerConfig:
        cfg = self.config_store.update(**options)
        self.recorder.emit(EVENT_RECONFIGURED, None, options=sorted(options))
        return cfg

    def install_config(self, cfg: LocalizerConfig) -> LocalizerConfig:
        out = self.config_store.install(cfg)
        self.recorder.emit(EVENT_RECONFIGURED, None, options=["*"])
        return out

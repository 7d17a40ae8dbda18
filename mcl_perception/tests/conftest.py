# tests/conftest.py
import math
import numpy as np
import pytest
from mcl_perception.config import LocalizerConfig, apply_overrides
from mcl_perception.datatypes import RangeScan
from mcl_perception.distance_field import DistanceField
from mcl_perception.events import EventRecorder
from mcl_perception.orchestrator import ScanIntegrationOrchestrator
from mcl_perception.particle_filter import ParticleFilter, PFConfig
from mcl_perception.smoke import build_room
from mcl_perception.transforms import TransformBuffer


class FakeClock:
    def __init__(self, t=0.0):
        self.t = float(t)

    def __call__(self):
        return self.t

    def sleep(self, dt):
        self.t += float(dt)


@pytest.fixture
def rng():
    return np.random.default_rng(123)


@pytest.fixture
def room_grid():
    # 12 x 12 m grid, origin (-6, -6), 0.1 m cells; walls straddle +-5 m
    return build_room(size=10.0, resolution=0.1, margin=1.0, obstacle=False)


@pytest.fixture
def room_field(room_grid):
    return DistanceField(room_grid, max_occ_dist=2.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scan_factory(room_field):
    """Exact scan from `pose` (ray cast against the room), or explicit ranges."""
    def _make_scan(pose=(0.0, 0.0, 0.0), beams=36, ranges=None, bearings=None,
                   range_max=12.0, frame_id="laser", stamp=0.0):
        if bearings is None:
            bearings = np.arange(beams) * (2.0 * math.pi / beams)
        bearings = np.asarray(bearings, dtype=float)
        if ranges is None:
            ranges = room_field.raycast(pose[0], pose[1], pose[2] + bearings, range_max)
        return RangeScan(ranges=ranges, bearings=bearings, range_max=range_max,
                         frame_id=frame_id, stamp=stamp)
    return _make_scan


@pytest.fixture
def orchestrator_factory(clock):
    def _make_orch(num_samples=50, cfg: LocalizerConfig = None, transforms=None, **options):
        cfg = cfg or LocalizerConfig()
        if options:
            cfg = apply_overrides(cfg, options)
        if transforms is None:
            transforms = TransformBuffer(clock=clock, sleep=clock.sleep)
            transforms.set_static("laser", (0.0, 0.0, 0.0))
        engine = ParticleFilter(PFConfig(num_samples=num_samples, seed=7))
        return ScanIntegrationOrchestrator(
            engine, cfg, transforms=transforms, recorder=EventRecorder(), clock=clock, seed=11,
        )
    return _make_orch

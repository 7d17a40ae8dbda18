# tests/test_sensor_model.py
import math
import numpy as np
import pytest
from mcl_perception.config import GompertzParams, MapFactors, ModelType, ScannerConfig
from mcl_perception.datatypes import RangeScan, SampleSet
from mcl_perception.errors import MapNotReady, SensorDataInvalid
from mcl_perception.sensor_model import RangeScanSensorModel, apply_gompertz, select_beams

ALL_MODELS = [
    ModelType.BEAM,
    ModelType.LIKELIHOOD_FIELD,
    ModelType.LIKELIHOOD_FIELD_PROB,
    ModelType.LIKELIHOOD_FIELD_GOMPERTZ,
]

def _samples(poses):
    poses = np.asarray(poses, dtype=float)
    return SampleSet(poses, np.ones(poses.shape[0]))

def test_room_true_pose_beats_shifted_pose(room_field):
    # 8 beams of 5.0 m every 45 deg from (0, 0, 0) in the 10 x 10 m room
    bearings = np.arange(8) * (math.pi / 4.0)
    scan = RangeScan(ranges=np.full(8, 5.0), bearings=bearings, range_max=10.0)
    cfg = ScannerConfig(model_type=ModelType.LIKELIHOOD_FIELD, z_hit=0.95, z_rand=0.05, sigma_hit=0.2)
    s = _samples([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])

    total = RangeScanSensorModel().score(scan, s, cfg, room_field, MapFactors())
    assert total == pytest.approx(float(np.sum(s.weights)))
    assert s.weights[0] > 10.0 * s.weights[1]

@pytest.mark.parametrize("model_type", [ModelType.LIKELIHOOD_FIELD, ModelType.LIKELIHOOD_FIELD_PROB])
def test_field_models_prefer_generating_pose(room_field, scan_factory, model_type):
    scan = scan_factory(pose=(0.0, 0.0, 0.0), beams=36)
    # every offset of more than one cell (0.1 m) in x or y, plus yaw-only offsets
    steps = [-1.0, -0.5, -0.25, -0.15, 0.0, 0.15, 0.25, 0.5, 1.0]
    offsets = [
        [dx, dy, dyaw]
        for dx in steps for dy in steps for dyaw in (-0.3, 0.0, 0.3)
        if (dx, dy, dyaw) != (0.0, 0.0, 0.0)
    ]
    s = _samples([[0.0, 0.0, 0.0]] + offsets)
    RangeScanSensorModel().score(scan, s, ScannerConfig(model_type=model_type), room_field, MapFactors())
    assert len(s) == 1 + 9 * 9 * 3 - 1
    worst = int(np.argmax(s.weights[1:]))
    assert s.weights[0] > s.weights[1 + worst], f"offset {offsets[worst]} scored as high as the true pose"

def test_beam_model_prefers_generating_pose(room_field, scan_factory):
    scan = scan_factory(pose=(0.0, 0.0, 0.0), beams=36)
    s = _samples([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [-1.0, 1.5, 0.0], [0.0, 0.0, 0.5]])
    cfg = ScannerConfig(model_type=ModelType.BEAM, max_beams=36)
    RangeScanSensorModel().score(scan, s, cfg, room_field, MapFactors())
    assert np.all(s.weights[0] > s.weights[1:])

@pytest.mark.parametrize("model_type", ALL_MODELS)
def test_weights_never_negative(room_field, rng, model_type):
    n = 100
    poses = np.column_stack([
        rng.uniform(-7.0, 7.0, n), rng.uniform(-7.0, 7.0, n), rng.uniform(-math.pi, math.pi, n),
    ])
    ranges = rng.uniform(-1.0, 14.0, 40)
    ranges[::7] = np.nan
    ranges[3] = np.inf
    scan = RangeScan(ranges=ranges, bearings=np.linspace(-math.pi, math.pi, 40), range_max=12.0)
    cfg = ScannerConfig(
        model_type=model_type,
        gompertz=GompertzParams(a=1.0, b=3.0, c=5.0, output_shift=-0.5),
    )
    s = SampleSet(poses, rng.uniform(0.0, 1.0, n))
    total = RangeScanSensorModel().score(scan, s, cfg, room_field, MapFactors(0.5, 0.5, 0.3))
    assert np.all(np.isfinite(s.weights))
    assert np.all(s.weights >= 0.0)
    assert total >= 0.0

def test_off_map_penalty_scales_likelihood(room_field, scan_factory):
    scan = scan_factory()
    model = RangeScanSensorModel()
    cfg = ScannerConfig()
    a = _samples([[20.0, 20.0, 0.0]])
    b = _samples([[20.0, 20.0, 0.0]])
    model.score(scan, a, cfg, room_field, MapFactors(off_map_factor=0.3))
    model.score(scan, b, cfg, room_field, MapFactors(off_map_factor=1.0))
    assert b.weights[0] > 0.0
    assert a.weights[0] == pytest.approx(0.3 * b.weights[0])

def test_scanner_offset_is_composed(room_field, scan_factory):
    # scan taken from (1, 0, 0) by a scanner mounted 1 m ahead of a robot at the origin
    scan = scan_factory(pose=(1.0, 0.0, 0.0)).with_scanner_pose((1.0, 0.0, 0.0))
    s = _samples([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    RangeScanSensorModel().score(scan, s, ScannerConfig(), room_field, MapFactors())
    assert s.weights[0] > s.weights[1]

def test_no_usable_beams_keeps_weight(room_field):
    scan = RangeScan(ranges=np.full(5, 20.0), bearings=np.zeros(5), range_max=12.0)
    s = SampleSet(np.zeros((3, 3)), np.array([0.2, 0.3, 0.5]))
    total = RangeScanSensorModel().score(scan, s, ScannerConfig(), room_field, MapFactors())
    assert np.allclose(s.weights, [0.2, 0.3, 0.5])
    assert total == pytest.approx(1.0)

def test_beam_at_range_max_is_not_used(room_field):
    # readings equal to range_max are max-range returns, not endpoints
    scan = RangeScan(ranges=[4.0, 12.0, 12.0], bearings=[0.0, 1.0, 2.0], range_max=12.0)
    model = RangeScanSensorModel()
    for model_type in (ModelType.LIKELIHOOD_FIELD, ModelType.LIKELIHOOD_FIELD_PROB):
        model.score(scan, _samples([[0.0, 0.0, 0.0]]), ScannerConfig(model_type=model_type), room_field, MapFactors())
        assert model.last_stats["beams_used"] == 1

def test_empty_sample_set_scores_zero(room_field, scan_factory):
    s = SampleSet(np.zeros((0, 3)))
    assert RangeScanSensorModel().score(scan_factory(), s, ScannerConfig(), room_field, MapFactors()) == 0.0

def test_score_requires_field_and_valid_scan(room_field):
    model = RangeScanSensorModel()
    s = _samples([[0.0, 0.0, 0.0]])
    scan = RangeScan(ranges=[1.0], bearings=[0.0], range_max=5.0)
    with pytest.raises(MapNotReady):
        model.score(scan, s, ScannerConfig(), None, MapFactors())
    with pytest.raises(SensorDataInvalid):
        model.score(RangeScan(ranges=[], bearings=[], range_max=5.0), s, ScannerConfig(), room_field, MapFactors())
    with pytest.raises(SensorDataInvalid):
        model.score(RangeScan(ranges=[1.0, 2.0], bearings=[0.0], range_max=5.0), s,
                    ScannerConfig(), room_field, MapFactors())

def test_select_beams_fixed_stride():
    assert np.array_equal(select_beams(10, 30), np.arange(10))
    assert np.array_equal(select_beams(60, 30), np.arange(0, 60, 2))
    idx = select_beams(100, 30)
    assert idx.size <= 30
    assert np.array_equal(idx, np.arange(0, 100, 4))
    assert select_beams(0, 30).size == 0

def test_scratch_buffer_only_grows(room_field, scan_factory):
    model = RangeScanSensorModel()
    scan = scan_factory(beams=36)
    cfg = ScannerConfig(max_beams=36)
    model.score(scan, SampleSet(np.zeros((40, 3))), cfg, room_field, MapFactors())
    assert model.scratch_capacity == (40, 36)
    model.score(scan, SampleSet(np.zeros((10, 3))), cfg, room_field, MapFactors())
    assert model.scratch_capacity == (40, 36)
    model.score(scan, SampleSet(np.zeros((80, 3))), cfg, room_field, MapFactors())
    assert model.scratch_capacity == (80, 36)

def test_last_stats_reported(room_field, scan_factory):
    model = RangeScanSensorModel()
    scan = scan_factory(beams=36)
    total = model.score(scan, SampleSet(np.zeros((5, 3))), ScannerConfig(max_beams=12), room_field, MapFactors())
    st = model.last_stats
    assert st["model"] == "likelihood_field"
    assert st["beams_selected"] == 12
    assert st["beams_used"] == 12
    assert st["beam_skip_fallback"] is False
    assert st["total"] == pytest.approx(total)

@pytest.mark.parametrize("params", [
    GompertzParams(),
    GompertzParams(a=2.0, b=5.0, c=10.0, input_shift=-0.5, input_scale=2.0, output_shift=-0.1),
    GompertzParams(a=1.0, b=0.0, c=3.0),
    GompertzParams(a=0.5, b=2.0, c=0.0),
])
def test_gompertz_non_decreasing(params):
    p = np.linspace(0.0, 1.0, 201)
    g = apply_gompertz(p, params)
    assert g.shape == p.shape
    assert np.all(np.diff(g) >= -1e-12)

def test_gompertz_scalar_and_formula():
    gp = GompertzParams(a=2.0, b=1.5, c=3.0, input_shift=0.1, input_scale=0.5, output_shift=0.25)
    v = apply_gompertz(0.4, gp)
    assert isinstance(v, float)
    assert v == pytest.approx(2.0 * math.exp(-1.5 * math.exp(-3.0 * 0.5 * 0.5)) + 0.25)
    assert RangeScanSensorModel().apply_gompertz(0.4, gp) == pytest.approx(v)

def test_gompertz_model_applies_reshape_to_mean(room_field, scan_factory):
    scan = scan_factory(beams=10)
    gp = GompertzParams(a=1.0, b=2.0, c=4.0)
    s_prob = _samples([[0.0, 0.0, 0.0]])
    s_gz = _samples([[0.0, 0.0, 0.0]])
    model = RangeScanSensorModel()
    model.score(scan, s_prob, ScannerConfig(model_type=ModelType.LIKELIHOOD_FIELD_PROB), room_field, MapFactors())
    model.score(scan, s_gz, ScannerConfig(model_type=ModelType.LIKELIHOOD_FIELD_GOMPERTZ, gompertz=gp),
                room_field, MapFactors())
    assert s_gz.weights[0] == pytest.approx(apply_gompertz(s_prob.weights[0], gp))

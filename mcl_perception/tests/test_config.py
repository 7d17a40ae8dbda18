# tests/test_config.py
import json
import math
import threading
import pytest
from mcl_perception.config import (
    ConfigStore, LocalizerConfig, ModelType, apply_overrides, config_from_dict,
    dump_config, export_config_json, load_config,
)

YAML_TEXT = """
scanner:
  model_type: likelihood_field_gompertz
  sigma_hit: 0.15
  max_beams: 60
  gompertz:
    a: 2.0
    c: 4.0
  beam_skip:
    enabled: true
    threshold: 0.4
map_factors:
  off_map_factor: 0.5
  non_free_space_radius: 0.3
global_localization:
  non_free_space_factor: 0.0
resample_interval: 3
sensor_likelihood_max_dist: 1.5
"""

def test_load_yaml_nested_and_flat(tmp_path):
    path = tmp_path / "mcl.yaml"
    path.write_text(YAML_TEXT, encoding="utf-8")
    cfg = load_config(str(path))

    assert cfg.scanner.model_type == ModelType.LIKELIHOOD_FIELD_GOMPERTZ
    assert cfg.scanner.sigma_hit == pytest.approx(0.15)
    assert cfg.scanner.max_beams == 60
    assert cfg.scanner.gompertz.a == pytest.approx(2.0)
    assert cfg.scanner.gompertz.b == pytest.approx(1.0)
    assert cfg.scanner.beam_skip.enabled is True
    assert cfg.scanner.beam_skip.threshold == pytest.approx(0.4)
    assert cfg.map_factors.off_map_factor == pytest.approx(0.5)
    assert cfg.map_factors.non_free_space_radius == pytest.approx(0.3)
    assert cfg.global_localization_factors.non_free_space_factor == pytest.approx(0.0)
    assert cfg.resample_interval == 3
    # flat alias wins over the nested default
    assert cfg.scanner.max_occ_dist == pytest.approx(1.5)

def test_empty_dict_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == LocalizerConfig()
    assert config_from_dict({"scanner": None}) == LocalizerConfig()

def test_overrides_never_mutate_input():
    base = LocalizerConfig()
    out = apply_overrides(base, {"z_hit": 0.5, "do_beamskip": 1, "gompertz_output_shift": -0.1,
                                 "model_type": "BEAM", "global_localization_off_map_factor": 0.2})
    assert base == LocalizerConfig()
    assert out.scanner.z_hit == pytest.approx(0.5)
    assert out.scanner.beam_skip.enabled is True
    assert out.scanner.gompertz.output_shift == pytest.approx(-0.1)
    assert out.scanner.model_type == ModelType.BEAM
    assert out.global_localization_factors.off_map_factor == pytest.approx(0.2)

def test_overrides_reject_unknown_and_invalid():
    with pytest.raises(KeyError):
        apply_overrides(LocalizerConfig(), {"max_particles": 10})
    with pytest.raises(ValueError):
        apply_overrides(LocalizerConfig(), {"off_map_factor": 1.5})
    with pytest.raises(ValueError):
        apply_overrides(LocalizerConfig(), {"max_beams": 0})
    with pytest.raises(ValueError):
        apply_overrides(LocalizerConfig(), {"model_type": "sonar"})

def test_export_json_roundtrip(tmp_path):
    cfg = apply_overrides(LocalizerConfig(), {"model_type": "likelihood_field_prob", "update_min_a": 0.2})
    path = tmp_path / "cfg.json"
    export_config_json(str(path), cfg)
    d = json.loads(path.read_text(encoding="utf-8"))
    assert d["scanner"]["model_type"] == "likelihood_field_prob"
    assert config_from_dict(d) == cfg
    assert dump_config(cfg)["update_min_a"] == pytest.approx(0.2)

def test_store_snapshots_are_stable():
    store = ConfigStore()
    snap = store.snapshot()
    store.update(resample_interval=5)
    assert snap.resample_interval == 2
    assert store.snapshot().resample_interval == 5
    assert store.version == 1
    store.install(LocalizerConfig(update_min_a=math.pi))
    assert store.version == 2
    assert store.snapshot().resample_interval == 2

def test_store_concurrent_updates():
    store = ConfigStore()

    def _writer(k):
        for _ in range(50):
            store.update(max_beams=k)

    threads = [threading.Thread(target=_writer, args=(k,)) for k in range(1, 5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.version == 200
    assert store.snapshot().scanner.max_beams in (1, 2, 3, 4)

# mcl_perception/config.py
from __future__ import annotations

import dataclasses as dc
import json
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

import yaml


class ModelType(str, Enum):
    BEAM = "beam"
    LIKELIHOOD_FIELD = "likelihood_field"
    LIKELIHOOD_FIELD_PROB = "likelihood_field_prob"
    LIKELIHOOD_FIELD_GOMPERTZ = "likelihood_field_gompertz"


@dataclass(frozen=True)
class GompertzParams:
    # gompertz(p) = a * exp(-b * exp(-c * (p + input_shift) * input_scale)) + output_shift
    a: float = 1.0
    b: float = 1.0
    c: float = 1.0
    input_shift: float = 0.0
    input_scale: float = 1.0
    output_shift: float = 0.0


@dataclass(frozen=True)
class BeamSkipParams:
    enabled: bool = False
    distance: float = 0.5          # m, endpoint closer than this counts as "explained"
    threshold: float = 0.3         # min fraction of samples explaining a beam
    error_threshold: float = 0.9   # skipped fraction above this => integrate all beams


@dataclass(frozen=True)
class ScannerConfig:
    """Sensor model parameters; `model_type` selects which groups are read.

    z_hit + z_short + z_max + z_rand should sum to 1 (not enforced).
    """
    model_type: ModelType = ModelType.LIKELIHOOD_FIELD
    z_hit: float = 0.95
    z_short: float = 0.1
    z_max: float = 0.05
    z_rand: float = 0.05
    sigma_hit: float = 0.2          # m
    lambda_short: float = 0.1       # 1/m, BEAM only
    max_occ_dist: float = 2.0       # m, distance field clamp
    max_beams: int = 30
    gompertz: GompertzParams = field(default_factory=GompertzParams)
    beam_skip: BeamSkipParams = field(default_factory=BeamSkipParams)

    def validate(self) -> None:
        if not isinstance(self.model_type, ModelType):
            raise ValueError(f"model_type must be ModelType, got {self.model_type!r}")
        for name in ("z_hit", "z_short", "z_max", "z_rand"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.sigma_hit <= 0.0:
            raise ValueError(f"sigma_hit must be > 0, got {self.sigma_hit}")
        if self.lambda_short < 0.0:
            raise ValueError(f"lambda_short must be >= 0, got {self.lambda_short}")
        if self.max_occ_dist <= 0.0:
            raise ValueError(f"max_occ_dist must be > 0, got {self.max_occ_dist}")
        if int(self.max_beams) < 1:
            raise ValueError(f"max_beams must be >= 1, got {self.max_beams}")


@dataclass(frozen=True)
class MapFactors:
    off_map_factor: float = 1.0
    non_free_space_factor: float = 1.0
    non_free_space_radius: float = 0.0   # m

    def validate(self) -> None:
        if not 0.0 <= self.off_map_factor <= 1.0:
            raise ValueError(f"off_map_factor must be in [0, 1], got {self.off_map_factor}")
        if not 0.0 <= self.non_free_space_factor <= 1.0:
            raise ValueError(
                f"non_free_space_factor must be in [0, 1], got {self.non_free_space_factor}"
            )
        if self.non_free_space_radius < 0.0:
            raise ValueError(
                f"non_free_space_radius must be >= 0, got {self.non_free_space_radius}"
            )


@dataclass(frozen=True)
class LocalizerConfig:
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    map_factors: MapFactors = field(default_factory=MapFactors)
    # substituted wholesale while global localization is active
    global_localization_factors: MapFactors = field(
        default_factory=lambda: MapFactors(off_map_factor=1.0, non_free_space_factor=1.0)
    )

    resample_interval: int = 2
    scanner_check_interval: float = 15.0   # s, stale-scan watchdog
    update_min_d: float = 0.2              # m, translation before integrating
    update_min_a: float = math.pi / 6.0    # rad, rotation before integrating
    transform_timeout: float = 0.1         # s, bounded wait per transform lookup

    base_frame_id: str = "base_footprint"
    first_map_only: bool = False
    wait_for_external_bounds: bool = False

    # 3D -> 2D map projection band around the scanner plane
    scanner_height: float = 0.0
    scanner_height_tolerance: float = 0.1

    def validate(self) -> None:
        self.scanner.validate()
        self.map_factors.validate()
        self.global_localization_factors.validate()
        if self.scanner_check_interval <= 0.0:
            raise ValueError(
                f"scanner_check_interval must be > 0, got {self.scanner_check_interval}"
            )
        if self.update_min_d < 0.0 or self.update_min_a < 0.0:
            raise ValueError("update_min_d / update_min_a must be >= 0")
        if self.transform_timeout < 0.0:
            raise ValueError(f"transform_timeout must be >= 0, got {self.transform_timeout}")
        if self.scanner_height_tolerance < 0.0:
            raise ValueError("scanner_height_tolerance must be >= 0")


# ------------------------------------------------------------------
# flat option names (reconfiguration surface) -> nested field paths
# ------------------------------------------------------------------

FLAT_OPTIONS: Dict[str, Tuple[str, ...]] = {
    "model_type": ("scanner", "model_type"),
    "z_hit": ("scanner", "z_hit"),
    "z_short": ("scanner", "z_short"),
    "z_max": ("scanner", "z_max"),
    "z_rand": ("scanner", "z_rand"),
    "sigma_hit": ("scanner", "sigma_hit"),
    "lambda_short": ("scanner", "lambda_short"),
    "max_occ_dist": ("scanner", "max_occ_dist"),
    "sensor_likelihood_max_dist": ("scanner", "max_occ_dist"),
    "max_beams": ("scanner", "max_beams"),
    "gompertz_a": ("scanner", "gompertz", "a"),
    "gompertz_b": ("scanner", "gompertz", "b"),
    "gompertz_c": ("scanner", "gompertz", "c"),
    "gompertz_input_shift": ("scanner", "gompertz", "input_shift"),
    "gompertz_input_scale": ("scanner", "gompertz", "input_scale"),
    "gompertz_output_shift": ("scanner", "gompertz", "output_shift"),
    "do_beamskip": ("scanner", "beam_skip", "enabled"),
    "beam_skip_distance": ("scanner", "beam_skip", "distance"),
    "beam_skip_threshold": ("scanner", "beam_skip", "threshold"),
    "beam_skip_error_threshold": ("scanner", "beam_skip", "error_threshold"),
    "off_map_factor": ("map_factors", "off_map_factor"),
    "non_free_space_factor": ("map_factors", "non_free_space_factor"),
    "non_free_space_radius": ("map_factors", "non_free_space_radius"),
    "global_localization_off_map_factor": ("global_localization_factors", "off_map_factor"),
    "global_localization_non_free_space_factor": (
        "global_localization_factors", "non_free_space_factor"
    ),
    "resample_interval": ("resample_interval",),
    "scanner_check_interval": ("scanner_check_interval",),
    "update_min_d": ("update_min_d",),
    "update_min_a": ("update_min_a",),
    "transform_timeout": ("transform_timeout",),
    "base_frame_id": ("base_frame_id",),
    "first_map_only": ("first_map_only",),
    "wait_for_external_bounds": ("wait_for_external_bounds",),
    "scanner_height": ("scanner_height",),
    "scanner_height_tolerance": ("scanner_height_tolerance",),
}


def _coerce(path: Tuple[str, ...], value: Any) -> Any:
    leaf = path[-1]
    if leaf == "model_type":
        return value if isinstance(value, ModelType) else ModelType(str(value).lower())
    if leaf in ("max_beams", "resample_interval"):
        return int(value)
    if leaf in ("enabled", "first_map_only", "wait_for_external_bounds"):
        return bool(value)
    if leaf == "base_frame_id":
        return str(value)
    return float(value)


def _replace_path(obj: Any, path: Tuple[str, ...], value: Any) -> Any:
    if len(path) == 1:
        return dc.replace(obj, **{path[0]: value})
    child = getattr(obj, path[0])
    return dc.replace(obj, **{path[0]: _replace_path(child, path[1:], value)})


def apply_overrides(cfg: LocalizerConfig, options: Dict[str, Any]) -> LocalizerConfig:
    """Return a new config with flat options applied (input is never mutated)."""
    out = cfg
    for key, value in options.items():
        path = FLAT_OPTIONS.get(key)
        if path is None:
            raise KeyError(f"unknown configuration option '{key}'")
        out = _replace_path(out, path, _coerce(path, value))
    out.validate()
    return out


def _group(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    return cfg.get(key, {}) or {}


def _factors_from_dict(d: Dict[str, Any], base: MapFactors) -> MapFactors:
    return MapFactors(
        off_map_factor=float(d.get("off_map_factor", base.off_map_factor)),
        non_free_space_factor=float(d.get("non_free_space_factor", base.non_free_space_factor)),
        non_free_space_radius=float(d.get("non_free_space_radius", base.non_free_space_radius)),
    )


def config_from_dict(cfg: Dict[str, Any]) -> LocalizerConfig:
    """Build a LocalizerConfig from the nested layout used by YAML files.

    Missing groups/keys fall back to dataclass defaults. Top-level flat option
    names (see FLAT_OPTIONS) are applied last and win over nested values.
    """
    cfg = cfg or {}
    base = LocalizerConfig()

    sc = _group(cfg, "scanner")
    gz = _group(sc, "gompertz")
    bs = _group(sc, "beam_skip")
    d_sc = base.scanner
    d_gz = d_sc.gompertz
    d_bs = d_sc.beam_skip

    scanner = ScannerConfig(
        model_type=_coerce(("model_type",), sc.get("model_type", d_sc.model_type)),
        z_hit=float(sc.get("z_hit", d_sc.z_hit)),
        z_short=float(sc.get("z_short", d_sc.z_short)),
        z_max=float(sc.get("z_max", d_sc.z_max)),
        z_rand=float(sc.get("z_rand", d_sc.z_rand)),
        sigma_hit=float(sc.get("sigma_hit", d_sc.sigma_hit)),
        lambda_short=float(sc.get("lambda_short", d_sc.lambda_short)),
        max_occ_dist=float(sc.get("max_occ_dist", d_sc.max_occ_dist)),
        max_beams=int(sc.get("max_beams", d_sc.max_beams)),
        gompertz=GompertzParams(
            a=float(gz.get("a", d_gz.a)),
            b=float(gz.get("b", d_gz.b)),
            c=float(gz.get("c", d_gz.c)),
            input_shift=float(gz.get("input_shift", d_gz.input_shift)),
            input_scale=float(gz.get("input_scale", d_gz.input_scale)),
            output_shift=float(gz.get("output_shift", d_gz.output_shift)),
        ),
        beam_skip=BeamSkipParams(
            enabled=bool(bs.get("enabled", d_bs.enabled)),
            distance=float(bs.get("distance", d_bs.distance)),
            threshold=float(bs.get("threshold", d_bs.threshold)),
            error_threshold=float(bs.get("error_threshold", d_bs.error_threshold)),
        ),
    )

    out = LocalizerConfig(
        scanner=scanner,
        map_factors=_factors_from_dict(_group(cfg, "map_factors"), base.map_factors),
        global_localization_factors=_factors_from_dict(
            _group(cfg, "global_localization") or _group(cfg, "global_localization_factors"),
            base.global_localization_factors,
        ),
    )

    flat = {k: v for k, v in cfg.items() if k in FLAT_OPTIONS}
    return apply_overrides(out, flat)


def load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(path: str) -> LocalizerConfig:
    return config_from_dict(load_yaml(path))


def dump_config(cfg: LocalizerConfig) -> Dict[str, Any]:
    d = dc.asdict(cfg)
    d["scanner"]["model_type"] = cfg.scanner.model_type.value
    return d


def export_config_json(path: str, cfg: LocalizerConfig):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(dump_config(cfg), f, indent=2, ensure_ascii=False)


class ConfigStore:
    """Single-writer / multi-reader holder of the active configuration.

    Readers take `snapshot()` once at the start of an event and use it for the
    whole event. Writers install a new frozen snapshot; a snapshot is never
    mutated in place.
    """

    def __init__(self, cfg: LocalizerConfig | None = None):
        cfg = cfg or LocalizerConfig()
        cfg.validate()
        self._lock = threading.Lock()
        self._snapshot = cfg
        self.version = 0

    def snapshot(self) -> LocalizerConfig:
        with self._lock:
            return self._snapshot

    def install(self, cfg: LocalizerConfig) -> LocalizerConfig:
        cfg.validate()
        with self._lock:
            self._snapshot = cfg
            self.version += 1
        return cfg

    def update(self, **options) -> LocalizerConfig:
        with self._lock:
            cfg = apply_overrides(self._snapshot, options)
            self._snapshot = cfg
            self.version += 1
        return cfg

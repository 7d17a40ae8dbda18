# mcl_perception/sensor_model.py
from __future__ import annotations

"""
================================================================================
RangeScanSensorModel: WEIGHTING CONTRACT
================================================================================

score(scan, samples, config, field, factors) -> total

For every sample j:
    w_j <- w_j * map_factor(pose_j) * likelihood(pose_j | scan, field)
and the sum of the new weights is returned. 0.0 means every hypothesis was
judged impossible; it is a result, not an error.

Beam selection:
    stride = ceil(beam_count / max_beams), beams 0, stride, 2*stride, ...
    Identical scans always select identical beams.

Per-beam probability (d = clamped field distance at the beam endpoint):
    LIKELIHOOD_FIELD*:  pz = z_hit * exp(-d^2 / (2 sigma_hit^2)) + z_rand / range_max
    BEAM:               mixture of hit / short / max / rand around the ray-cast range

Aggregation per pose:
    BEAM, LIKELIHOOD_FIELD     product over beams (summed in log space)
    LIKELIHOOD_FIELD_PROB      mean over integrated beams, with beam skipping
    LIKELIHOOD_FIELD_GOMPERTZ  mean over beams, then apply_gompertz

A pose with no usable beams keeps likelihood 1.0. Weights are written back
in one assignment after all poses are scored, and are clamped at >= 0.
================================================================================
"""

from typing import Any, Callable, Dict
import math

import numpy as np

from .config import GompertzParams, MapFactors, ModelType, ScannerConfig
from .datatypes import RangeScan, SampleSet, compose_poses
from .distance_field import DistanceField
from .errors import MapNotReady
from .map_factors import MapFactorPolicy


def apply_gompertz(p, params: GompertzParams):
    """a * exp(-b * exp(-c * (p + input_shift) * input_scale)) + output_shift.

    Non-decreasing in p whenever a, b, c and input_scale are all >= 0.
    Accepts scalars or arrays; returns the same kind.
    """
    g = params
    arr = np.asarray(p, dtype=float)
    out = g.a * np.exp(-g.b * np.exp(-g.c * (arr + g.input_shift) * g.input_scale)) + g.output_shift
    if np.ndim(out) == 0:
        return float(out)
    return out


def select_beams(beam_count: int, max_beams: int) -> np.ndarray:
    if beam_count <= 0:
        return np.zeros(0, dtype=int)
    step = max(1, int(math.ceil(beam_count / float(max(1, int(max_beams))))))
    return np.arange(0, beam_count, step)


def _log_product(pz: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore"):
        return np.exp(np.sum(np.log(pz), axis=1))


class RangeScanSensorModel:
    """Scores sample sets against range scans.

    One instance per physical scanner: it owns the per-sample x per-beam
    scratch buffer, which only grows, and the stats of its last call.
    """

    def __init__(self):
        self._temp_obs = np.empty((0, 0), dtype=float)
        self.last_stats: Dict[str, Any] = {}
        self._models: Dict[ModelType, Callable[..., np.ndarray]] = {
            ModelType.BEAM: self._calc_beam_model,
            ModelType.LIKELIHOOD_FIELD: self._calc_likelihood_field_model,
            ModelType.LIKELIHOOD_FIELD_PROB: self._calc_likelihood_field_model_prob,
            ModelType.LIKELIHOOD_FIELD_GOMPERTZ: self._calc_likelihood_field_model_gompertz,
        }

    # ------------------------------------------------------------------
    # scratch storage
    # ------------------------------------------------------------------

    def _scratch(self, n: int, m: int) -> np.ndarray:
        cap_n, cap_m = self._temp_obs.shape
        if n > cap_n or m > cap_m:
            self._temp_obs = np.empty((max(n, cap_n), max(m, cap_m)), dtype=float)
        return self._temp_obs[:n, :m]

    @property
    def scratch_capacity(self):
        return self._temp_obs.shape

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def score(
        self,
        scan: RangeScan,
        samples: SampleSet,
        config: ScannerConfig,
        field: DistanceField | None,
        factors: MapFactors,
    ) -> float:
        if field is None:
            raise MapNotReady("cannot score a scan without a distance field")
        scan.validate()

        idx = select_beams(len(scan), config.max_beams)
        self.last_stats = {
            "model": config.model_type.value,
            "beams_selected": int(idx.size),
            "beams_used": 0,
            "beams_skipped": 0,
            "skip_fraction": 0.0,
            "beam_skip_fallback": False,
            "total": 0.0,
        }
        if len(samples) == 0:
            return 0.0

        ranges = scan.ranges[idx]
        bearings = scan.bearings[idx]
        sensor_poses = compose_poses(samples.poses, scan.scanner_pose)

        penalty = MapFactorPolicy(factors).penalty(field, samples.poses)
        likelihood = self._models[config.model_type](
            scan, ranges, bearings, sensor_poses, config, field
        )

        w = samples.weights * penalty * likelihood
        w = np.where(np.isfinite(w) & (w > 0.0), w, 0.0)
        samples.weights[:] = w

        total = float(np.sum(w))
        self.last_stats["total"] = total
        return total

    def apply_gompertz(self, p, params: GompertzParams):
        return apply_gompertz(p, params)

    # ------------------------------------------------------------------
    # shared per-beam terms
    # ------------------------------------------------------------------

    @staticmethod
    def _endpoint_valid(scan: RangeScan, ranges: np.ndarray) -> np.ndarray:
        with np.errstate(invalid="ignore"):
            return np.isfinite(ranges) & (ranges >= scan.range_min) & (ranges < scan.range_max)

    def _endpoint_distances(self, sensor_poses, ranges, bearings, field: DistanceField) -> np.ndarray:
        ang = sensor_poses[:, 2:3] + bearings[None, :]
        ex = sensor_poses[:, 0:1] + ranges[None, :] * np.cos(ang)
        ey = sensor_poses[:, 1:2] + ranges[None, :] * np.sin(ang)
        return field.distance(ex, ey)

    def _field_probs(self, z: np.ndarray, config: ScannerConfig, range_max: float) -> np.ndarray:
        n, m = z.shape
        out = self._scratch(n, m)
        np.multiply(z, z, out=out)
        out *= -1.0 / (2.0 * config.sigma_hit * config.sigma_hit)
        np.exp(out, out=out)
        out *= config.z_hit
        out += config.z_rand / range_max
        return out

    # ------------------------------------------------------------------
    # models
    # ------------------------------------------------------------------

    def _calc_beam_model(self, scan, ranges, bearings, sensor_poses, config, field):
        n = sensor_poses.shape[0]
        with np.errstate(invalid="ignore"):
            valid = np.isfinite(ranges) & (ranges >= scan.range_min) & (ranges <= scan.range_max)
        r = ranges[valid]
        b = bearings[valid]
        self.last_stats["beams_used"] = int(r.size)
        if r.size == 0:
            return np.ones(n)

        range_max = scan.range_max
        ang = sensor_poses[:, 2:3] + b[None, :]
        map_range = field.raycast(sensor_poses[:, 0:1], sensor_poses[:, 1:2], ang, range_max)

        rr = np.broadcast_to(r[None, :], map_range.shape)
        z = rr - map_range
        pz = self._scratch(n, r.size)
        pz[:] = config.z_hit * np.exp(-(z * z) / (2.0 * config.sigma_hit * config.sigma_hit))
        short = config.z_short * config.lambda_short * np.exp(-config.lambda_short * rr)
        pz += np.where(z < 0.0, short, 0.0)
        pz += np.where(rr >= range_max, config.z_max, 0.0)
        pz += np.where(rr < range_max, config.z_rand / range_max, 0.0)
        return _log_product(pz)

    def _calc_likelihood_field_model(self, scan, ranges, bearings, sensor_poses, config, field):
        n = sensor_poses.shape[0]
        valid = self._endpoint_valid(scan, ranges)
        self.last_stats["beams_used"] = int(np.count_nonzero(valid))
        if not np.any(valid):
            return np.ones(n)
        z = self._endpoint_distances(sensor_poses, ranges[valid], bearings[valid], field)
        pz = self._field_probs(z, config, scan.range_max)
        return _log_product(pz)

    def _calc_likelihood_field_model_prob(self, scan, ranges, bearings, sensor_poses, config, field):
        n = sensor_poses.shape[0]
        valid = self._endpoint_valid(scan, ranges)
        m = int(np.count_nonzero(valid))
        if m == 0:
            return np.ones(n)
        z = self._endpoint_distances(sensor_poses, ranges[valid], bearings[valid], field)
        pz = self._field_probs(z, config, scan.range_max)

        keep = np.ones(m, dtype=bool)
        bs = config.beam_skip
        if bs.enabled:
            # share of hypotheses for which the beam lands near an obstacle
            explained = np.mean(z < bs.distance, axis=0)
            keep = explained >= bs.threshold
            skipped = int(m - np.count_nonzero(keep))
            frac = skipped / float(m)
            self.last_stats["beams_skipped"] = skipped
            self.last_stats["skip_fraction"] = frac
            if frac > bs.error_threshold:
                self.last_stats["beam_skip_fallback"] = True
                keep[:] = True

        self.last_stats["beams_used"] = int(np.count_nonzero(keep))
        if not np.any(keep):
            return np.ones(n)
        return np.mean(pz[:, keep], axis=1)

    def _calc_likelihood_field_model_gompertz(self, scan, ranges, bearings, sensor_poses, config, field):
        n = sensor_poses.shape[0]
        valid = self._endpoint_valid(scan, ranges)
        self.last_stats["beams_used"] = int(np.count_nonzero(valid))
        if not np.any(valid):
            return np.ones(n)
        z = self._endpoint_distances(sensor_poses, ranges[valid], bearings[valid], field)
        p = np.mean(self._field_probs(z, config, scan.range_max), axis=1)
        return np.maximum(apply_gompertz(p, config.gompertz), 0.0)

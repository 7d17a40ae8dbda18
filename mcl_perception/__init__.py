"""
mcl_perception: range-scan perception update for Monte Carlo localization

This package scores weighted pose hypotheses against range scans and a known
occupancy map, and decides when those scores are applied to the population.

Core Classes:
  - RangeScanSensorModel: beam / likelihood-field / beam-skip / Gompertz scoring
  - MapFactorPolicy: off-map and non-free-space weight penalties
  - ScanIntegrationOrchestrator: map/scan/watchdog/global-localization events

Maps:
  - OccupancyGrid: 2D cell states (from probabilities or a 3D voxel band)
  - DistanceField: clamped distance-to-obstacle queries and ray casting

Collaborators:
  - ParticleFilter: reference engine (systematic resampling, convergence)
  - TransformBuffer: scanner-frame poses with bounded lookups
  - EventRecorder: counted, optionally JSON-lines, event reports

CLI utilities:
  - python -m mcl_perception.smoke   # global localization in a synthetic room
"""

from .config import (
    BeamSkipParams,
    ConfigStore,
    GompertzParams,
    LocalizerConfig,
    MapFactors,
    ModelType,
    ScannerConfig,
    load_config,
)
from .datatypes import Particle, RangeScan, SampleSet
from .distance_field import CellState, DistanceField, OccupancyGrid
from .errors import LocalizationError, MapNotReady, SensorDataInvalid, TransformUnavailable
from .events import EventRecorder
from .map_factors import MapFactorPolicy
from .orchestrator import LocalizerState, ScanIntegrationOrchestrator
from .particle_filter import ParticleFilter, PFConfig
from .scanner_registry import PlanarScanner, ScannerRegistry
from .sensor_model import RangeScanSensorModel, apply_gompertz
from .transforms import TransformBuffer

__all__ = [
    "BeamSkipParams",
    "ConfigStore",
    "GompertzParams",
    "LocalizerConfig",
    "MapFactors",
    "ModelType",
    "ScannerConfig",
    "load_config",
    "Particle",
    "RangeScan",
    "SampleSet",
    "CellState",
    "DistanceField",
    "OccupancyGrid",
    "LocalizationError",
    "MapNotReady",
    "SensorDataInvalid",
    "TransformUnavailable",
    "EventRecorder",
    "MapFactorPolicy",
    "LocalizerState",
    "ScanIntegrationOrchestrator",
    "ParticleFilter",
    "PFConfig",
    "PlanarScanner",
    "ScannerRegistry",
    "RangeScanSensorModel",
    "apply_gompertz",
    "TransformBuffer",
]

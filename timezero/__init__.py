"""Time-zero symptom trajectories and their association with diagnostic delay."""

from .config import DEFAULTS, PipelineConfig, get_config
from .pipeline import run_correlation, run_meta, run_validation
from .registry import OutcomeRegistry, OutcomeSpec

__all__ = [
    "DEFAULTS",
    "OutcomeRegistry",
    "OutcomeSpec",
    "PipelineConfig",
    "get_config",
    "run_correlation",
    "run_meta",
    "run_validation",
]

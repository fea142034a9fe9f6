"""
Flow QC - Configuration Schema

Pydantic models for all configuration options with validation rules.
"""

from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from flow_qc.config import defaults
from flow_qc.core.errors import ConfigError
from flow_qc.core.types import QCMode


class KDEConfig(BaseModel):
    """Kernel density estimation and peak clustering."""

    grid_size: int = Field(default=defaults.KDE_GRID_SIZE, ge=2, le=1 << 20)
    bandwidth_factor: float = Field(default=defaults.KDE_BANDWIDTH_FACTOR, gt=0, le=100)
    cluster_tolerance: float = Field(default=defaults.DEFAULT_CLUSTER_TOLERANCE, gt=0, le=1)
    prefer_gpu: bool = defaults.PREFER_GPU


class IsolationTreeConfig(BaseModel):
    """Isolation-tree ensemble configuration."""

    it_limit: float = Field(default=defaults.DEFAULT_IT_LIMIT, gt=0, lt=1)
    force_it: int = Field(default=defaults.DEFAULT_FORCE_IT, ge=1)
    n_trees: int = Field(default=defaults.DEFAULT_N_TREES, ge=1, le=10_000)
    subsample_size: int = Field(default=defaults.DEFAULT_SUBSAMPLE_SIZE, ge=2)
    seed: int = Field(default=defaults.DEFAULT_IT_SEED, ge=0)
    n_workers: int = Field(default=1, ge=1, le=256)


class MADConfig(BaseModel):
    """MAD outlier detection configuration."""

    mad_threshold: float = Field(default=defaults.DEFAULT_MAD_THRESHOLD, gt=0)
    smooth_param: float = Field(default=defaults.DEFAULT_MAD_SMOOTHING, ge=0, le=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = defaults.DEFAULT_LOG_LEVEL
    log_file: str | None = None
    log_to_console: bool = True
    structured: bool = False


class QCConfig(BaseModel):
    """Root configuration for a QC run."""

    channels: list[str] = Field(default_factory=list)
    determine_good_cells: QCMode = QCMode.ALL

    mad: float = Field(default=defaults.DEFAULT_MAD_THRESHOLD, gt=0)
    it_limit: float = Field(default=defaults.DEFAULT_IT_LIMIT, gt=0, lt=1)
    consecutive_bins: int = Field(default=defaults.DEFAULT_CONSECUTIVE_BINS, ge=1)
    min_cells: int = Field(default=defaults.DEFAULT_MIN_CELLS, ge=1)
    max_bins: int = Field(default=defaults.DEFAULT_MAX_BINS, ge=1)
    force_it: int = Field(default=defaults.DEFAULT_FORCE_IT, ge=1)
    peak_removal: float = Field(default=defaults.DEFAULT_PEAK_REMOVAL, ge=0, lt=1)
    min_nr_bins_peakdetection: float = Field(
        default=defaults.DEFAULT_MIN_NR_BINS_PEAKDETECTION, ge=0, le=100
    )

    # Fixed bin size; derived from min_cells/max_bins when unset
    events_per_bin: int | None = Field(default=None, ge=2)
    remove_zeros: bool = False
    skip_missing_channels: bool = False
    check_monotonic: bool = True
    mad_smoothing: float = Field(default=defaults.DEFAULT_MAD_SMOOTHING, ge=0, le=1)
    n_workers: int = Field(default=defaults.DEFAULT_N_WORKERS, ge=1, le=256)

    kde: KDEConfig = Field(default_factory=KDEConfig)
    isolation_tree: IsolationTreeConfig = Field(default_factory=IsolationTreeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("channels")
    @classmethod
    def channels_unique(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("channels must not contain duplicates")
        return v

    def isolation_tree_config(self) -> IsolationTreeConfig:
        """Ensemble settings with the top-level it_limit/force_it applied."""
        return self.isolation_tree.model_copy(
            update={"it_limit": self.it_limit, "force_it": self.force_it}
        )

    def mad_config(self) -> MADConfig:
        return MADConfig(mad_threshold=self.mad, smooth_param=self.mad_smoothing)

    @classmethod
    def from_yaml(cls, path: str) -> "QCConfig":
        """Load configuration from YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    def to_yaml(self, path: str) -> None:
        """Save configuration to YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)


# Preset configurations
PRESET_DEFAULT = QCConfig()

# Tighter thresholds: more bins flagged
PRESET_STRICT = QCConfig(mad=4.0, it_limit=0.55, consecutive_bins=8)

# Looser thresholds for noisy acquisitions
PRESET_LENIENT = QCConfig(mad=8.0, it_limit=0.7, consecutive_bins=3)

PRESETS = {
    "default": PRESET_DEFAULT,
    "strict": PRESET_STRICT,
    "lenient": PRESET_LENIENT,
}

"""
Flow QC - Pipeline Orchestrator

Runs the QC stages in order and turns per-bin verdicts into a per-event
keep mask plus a diagnostic report:

    binning -> peak detection -> isolation tree -> MAD -> consecutive filter
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

import numpy as np

from flow_qc.config.defaults import HIGH_REMOVAL_WARNING_PERCENT, MIN_BINS_FOR_QC
from flow_qc.config.schema import PRESETS, QCConfig
from flow_qc.core.errors import (
    ChannelNotFound,
    ConfigError,
    InsufficientData,
    InvalidChannel,
    NoPeaksDetected,
)
from flow_qc.core.logging_config import log_performance, log_throughput
from flow_qc.core.types import Bin, ChannelPeakFrame, EventTable, QCMode
from flow_qc.detection.binning import bins_to_event_mask, create_breaks, find_events_per_bin
from flow_qc.detection.consecutive import remove_short_regions
from flow_qc.detection.mad import mad_outlier_method
from flow_qc.detection.monotonic import MonotonicResult, find_increasing_decreasing_channels
from flow_qc.detection.peaks import PeakDetectionConfig, determine_peaks_all_channels
from flow_qc.dsp.backend import create_backend, resolve_backend_name
from flow_qc.ml.isolation_forest import isolation_tree_detect

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


class QCStage(str, Enum):
    """Pipeline stages that can be skipped and reported."""

    PEAK_DETECTION = "peak_detection"
    ISOLATION_TREE = "isolation_tree"
    MAD = "mad"
    CONSECUTIVE = "consecutive"
    MONOTONIC = "monotonic"


@dataclass
class QCResult:
    """Outcome of one QC run."""

    good_cells: np.ndarray  # bool per event of the input table, True = keep
    percentage_removed: float
    it_percentage: float | None
    mad_percentage: float | None
    consecutive_percentage: float | None
    n_bins: int
    events_per_bin: int
    peaks: dict[str, ChannelPeakFrame]

    mad_contribution: dict[str, float] = field(default_factory=dict)
    it_scores: np.ndarray | None = None
    bin_outliers: np.ndarray | None = None
    breaks: list[Bin] = field(default_factory=list)
    skipped_stages: list[str] = field(default_factory=list)
    skipped_channels: list[str] = field(default_factory=list)
    monotonic: MonotonicResult | None = None
    backend: str = "cpu"
    timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def n_events_kept(self) -> int:
        return int(self.good_cells.sum())

    def summary(self) -> dict[str, Any]:
        """Plain-dict report for logging or serialization."""
        return {
            "n_events": int(self.good_cells.size),
            "n_events_kept": self.n_events_kept,
            "percentage_removed": round(self.percentage_removed, 4),
            "it_percentage": self.it_percentage,
            "mad_percentage": self.mad_percentage,
            "consecutive_percentage": self.consecutive_percentage,
            "n_bins": self.n_bins,
            "events_per_bin": self.events_per_bin,
            "channels": sorted(self.peaks),
            "mad_contribution": dict(self.mad_contribution),
            "skipped_stages": list(self.skipped_stages),
            "skipped_channels": list(self.skipped_channels),
            "monotonic": self.monotonic.summary() if self.monotonic else None,
            "backend": self.backend,
            "timings_ms": {k: round(v, 2) for k, v in self.timings_ms.items()},
        }


def _percent(count: int, total: int) -> float:
    return 100.0 * count / total if total else 0.0


class QCPipeline:
    """
    QC orchestrator.

    Stages:
    - Stage 0: channel extraction and optional pre-filter mask
    - Stage 1: binning into overlapping windows
    - Stage 2: per-channel KDE peak detection (thread pool)
    - Stage 3: isolation tree over the bin feature matrix
    - Stage 4: MAD over the bins that survived stage 3
    - Stage 5: consecutive-bin filter and event mask
    """

    def __init__(self, config: QCConfig | None = None, config_path: str | None = None):
        """
        Initialize pipeline.

        Args:
            config: Configuration object.
            config_path: YAML file to load instead (takes precedence).
        """
        if config_path:
            config = QCConfig.from_yaml(config_path)
        self._config = config or QCConfig()

    @property
    def config(self) -> QCConfig:
        return self._config

    @classmethod
    def from_preset(cls, preset_name: str, **overrides) -> QCPipeline:
        """Build a pipeline from a named preset with field overrides."""
        if preset_name not in PRESETS:
            raise ConfigError(
                f"Unknown preset: {preset_name!r} (available: {', '.join(PRESETS)})"
            )
        return cls(PRESETS[preset_name].model_copy(update=overrides))

    def _load_channels(
        self, table: EventTable, indices: np.ndarray | None
    ) -> tuple[dict[str, np.ndarray], list[str]]:
        channel_data: dict[str, np.ndarray] = {}
        skipped: list[str] = []
        for name in self._config.channels:
            try:
                values = table.get_channel_as_f64(name)
            except (ChannelNotFound, InvalidChannel) as e:
                if not self._config.skip_missing_channels:
                    raise
                logger.warning(f"Skipping channel {name}: {e}")
                skipped.append(name)
                continue
            channel_data[name] = values[indices] if indices is not None else values
        return channel_data, skipped

    def run(
        self,
        table: EventTable,
        *,
        good_events: np.ndarray | None = None,
        backend: str | None = None,
        should_cancel: CancelCheck | None = None,
    ) -> QCResult | None:
        """
        Run quality control over ``table``.

        Args:
            table: Events in acquisition order.
            good_events: Optional keep mask from upstream margin/doublet
                removal; only these events enter QC and the rest stay
                removed in the result.
            backend: "cpu", "gpu" or None to follow ``config.kde.prefer_gpu``.
            should_cancel: Polled between stages and while estimating
                densities; returning True aborts the run.

        Returns:
            QCResult, or None if cancelled.

        Raises:
            ConfigError: No channels configured, or no events to bin.
            ChannelNotFound: Unknown channel and skip_missing_channels unset.
            InvalidChannel: Non-numeric channel and skip_missing_channels unset.
            NoPeaksDetected: No channel produced any peak.
        """
        config = self._config
        mode = QCMode(config.determine_good_cells)
        if not config.channels:
            raise ConfigError("No channels configured for quality control")

        def cancelled() -> bool:
            return should_cancel is not None and should_cancel()

        t_start = time.perf_counter()
        timings: dict[str, float] = {}
        skipped_stages: list[str] = []

        # Stage 0: channels, pre-filter
        n_total = table.n_events()
        indices = None
        if good_events is not None:
            good_events = np.asarray(good_events, dtype=bool)
            if good_events.size != n_total:
                raise ConfigError(
                    f"good_events has {good_events.size} entries for {n_total} events"
                )
            indices = np.flatnonzero(good_events)

        channel_data, skipped_channels = self._load_channels(table, indices)
        if not channel_data:
            raise ConfigError("None of the configured channels is present in the event table")
        n_events = n_total if indices is None else indices.size

        # Stage 1: binning
        events_per_bin = config.events_per_bin or find_events_per_bin(
            n_events, config.min_cells, config.max_bins
        )
        breaks = create_breaks(n_events, events_per_bin)
        n_bins = len(breaks)
        logger.info(
            f"Running QC on {n_events} events, {len(channel_data)} channels, "
            f"{n_bins} bins of {events_per_bin} events (mode={mode.value})"
        )

        backend_name = resolve_backend_name(backend, config.kde.prefer_gpu)
        it_outliers = np.zeros(n_bins, dtype=bool)
        mad_outliers = np.zeros(n_bins, dtype=bool)
        it_percentage = 0.0 if mode.runs_isolation_tree else None
        mad_percentage = 0.0 if mode.runs_mad else None
        consecutive_percentage = 0.0 if mode != QCMode.NONE else None
        it_scores = None
        mad_contribution: dict[str, float] = {}
        peaks: dict[str, ChannelPeakFrame] = {}
        monotonic = None

        if n_bins < MIN_BINS_FOR_QC:
            logger.warning(
                f"Only {n_bins} bins (need {MIN_BINS_FOR_QC}), skipping peak and anomaly detection"
            )
            skipped_stages.append(QCStage.PEAK_DETECTION.value)
            if mode.runs_isolation_tree:
                skipped_stages.append(QCStage.ISOLATION_TREE.value)
            if mode.runs_mad:
                skipped_stages.append(QCStage.MAD.value)
            if mode != QCMode.NONE:
                skipped_stages.append(QCStage.CONSECUTIVE.value)
            if config.check_monotonic:
                skipped_stages.append(QCStage.MONOTONIC.value)
        else:
            # Stage 2: peaks
            t0 = time.perf_counter()
            peaks = determine_peaks_all_channels(
                channel_data,
                breaks,
                PeakDetectionConfig.from_qc_config(config),
                backend_factory=partial(create_backend, backend_name),
                n_workers=config.n_workers,
                should_cancel=should_cancel,
            )
            if peaks is None:
                logger.info("QC cancelled during peak detection")
                return None
            if not peaks:
                raise NoPeaksDetected()
            timings[QCStage.PEAK_DETECTION.value] = (time.perf_counter() - t0) * 1000

            # Stage 3: isolation tree
            if mode.runs_isolation_tree:
                if cancelled():
                    return None
                t0 = time.perf_counter()
                try:
                    it_result = isolation_tree_detect(
                        peaks, n_bins, config.isolation_tree_config()
                    )
                except InsufficientData as e:
                    logger.warning(f"Skipping isolation tree: {e}")
                    skipped_stages.append(QCStage.ISOLATION_TREE.value)
                else:
                    it_outliers = it_result.outlier_bins
                    it_scores = it_result.scores
                    it_percentage = _percent(int(it_outliers.sum()), n_bins)
                    timings[QCStage.ISOLATION_TREE.value] = (time.perf_counter() - t0) * 1000

            # Stage 4: MAD over the bins the isolation tree kept
            if mode.runs_mad:
                if cancelled():
                    return None
                t0 = time.perf_counter()
                mad_result = mad_outlier_method(
                    peaks, ~it_outliers, n_bins, config.mad_config()
                )
                mad_outliers = mad_result.outlier_bins
                mad_contribution = mad_result.contribution
                mad_percentage = _percent(int((mad_outliers & ~it_outliers).sum()), n_bins)
                timings[QCStage.MAD.value] = (time.perf_counter() - t0) * 1000

            if config.check_monotonic:
                monotonic = find_increasing_decreasing_channels(channel_data, breaks)

        # Stage 5: consecutive filter, event mask
        combined = it_outliers | mad_outliers
        bin_outliers = combined
        if mode != QCMode.NONE and QCStage.CONSECUTIVE.value not in skipped_stages:
            bin_outliers = remove_short_regions(combined, config.consecutive_bins)
            consecutive_percentage = _percent(int((bin_outliers & ~combined).sum()), n_bins)

        kept = bins_to_event_mask(bin_outliers, breaks, n_events)
        if indices is None:
            good_cells = kept
        else:
            good_cells = np.zeros(n_total, dtype=bool)
            good_cells[indices] = kept

        percentage_removed = _percent(n_events - int(kept.sum()), n_events)
        if percentage_removed > HIGH_REMOVAL_WARNING_PERCENT:
            logger.warning(
                f"QC removed {percentage_removed:.1f}% of events, check the acquisition "
                f"or loosen the thresholds"
            )

        timings["total"] = (time.perf_counter() - t_start) * 1000
        log_performance(logger, "qc_run", timings["total"], n_events=n_events, n_bins=n_bins)
        if timings["total"] > 0:
            log_throughput(logger, "qc_events", n_events / (timings["total"] / 1000), "events/s")
        logger.info(
            f"QC finished: removed {percentage_removed:.2f}% of events "
            f"({int(bin_outliers.sum())}/{n_bins} bins flagged)"
        )

        return QCResult(
            good_cells=good_cells,
            percentage_removed=percentage_removed,
            it_percentage=it_percentage,
            mad_percentage=mad_percentage,
            consecutive_percentage=consecutive_percentage,
            n_bins=n_bins,
            events_per_bin=events_per_bin,
            peaks=peaks,
            mad_contribution=mad_contribution,
            it_scores=it_scores,
            bin_outliers=bin_outliers,
            breaks=breaks,
            skipped_stages=skipped_stages,
            skipped_channels=skipped_channels,
            monotonic=monotonic,
            backend=backend_name,
            timings_ms=timings,
        )


def run_qc(
    table: EventTable,
    config: QCConfig,
    *,
    good_events: np.ndarray | None = None,
    backend: str | None = None,
    should_cancel: CancelCheck | None = None,
) -> QCResult | None:
    """Run the QC pipeline once; see ``QCPipeline.run``."""
    return QCPipeline(config).run(
        table, good_events=good_events, backend=backend, should_cancel=should_cancel
    )

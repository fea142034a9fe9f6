"""
Flow QC - Pipeline Integration Tests

End-to-end runs of the QC orchestrator on synthetic event tables.
"""

import pytest
import numpy as np

from flow_qc.config.schema import QCConfig
from flow_qc.core.errors import ChannelNotFound, ConfigError, InvalidChannel
from flow_qc.core.types import ArrayEventTable, QCMode
from flow_qc.detection.binning import create_breaks
from flow_qc.pipeline.orchestrator import QCPipeline, QCStage, run_qc

CHANNELS = ["FSC-A", "SSC-A"]


def _config(**kwargs):
    kwargs.setdefault("channels", CHANNELS)
    return QCConfig(**kwargs)


class TestStableRun:
    """A run without acquisition problems."""

    def test_clean_data(self, event_table):
        result = run_qc(event_table(), _config(), backend="cpu")

        assert result.good_cells.shape == (20_000,)
        assert result.events_per_bin == 500
        assert result.n_bins == 80
        assert result.breaks[-1] == (19_750, 20_000)
        assert result.percentage_removed < 20.0
        assert result.backend == "cpu"
        assert sorted(result.peaks) == CHANNELS

    @pytest.mark.slow
    def test_clean_data_with_isolation_tree(self, event_table):
        """Enough bins for the isolation tree, and still nothing removed."""
        result = run_qc(event_table(n_events=200_000), _config(), backend="cpu")

        assert result.n_bins == 400
        assert QCStage.ISOLATION_TREE.value not in result.skipped_stages
        assert result.it_scores.shape == (400,)
        assert result.it_percentage == 0.0
        assert result.mad_percentage == 0.0
        assert result.percentage_removed < 1.0

    def test_isolation_tree_skipped_below_force_it(self, event_table):
        result = run_qc(event_table(), _config(), backend="cpu")
        assert QCStage.ISOLATION_TREE.value in result.skipped_stages
        assert result.it_percentage == 0.0
        assert result.it_scores is None
        assert result.mad_percentage is not None

    def test_summary(self, event_table):
        summary = run_qc(event_table(), _config(), backend="cpu").summary()
        assert summary["n_events"] == 20_000
        assert summary["n_bins"] == 80
        assert summary["channels"] == CHANNELS
        assert summary["backend"] == "cpu"
        assert "total" in summary["timings_ms"]


class TestBurst:
    """A channel jumps for a contiguous stretch of events."""

    def test_burst_removed(self, burst_table):
        result = run_qc(burst_table(), _config(), backend="cpu")

        assert not result.good_cells[9_000:11_000].any()
        assert result.percentage_removed >= 10.0
        assert result.percentage_removed < 50.0
        assert result.mad_percentage > 0.0
        assert result.mad_contribution["FSC-A"] > 0.0

    @pytest.mark.slow
    def test_burst_removed_with_isolation_tree(self, burst_table):
        """IT runs first, MAD takes the survivors, the burst is gone."""
        table = burst_table(n_events=200_000, start=90_000, stop=110_000)
        result = run_qc(table, _config(), backend="cpu")

        assert result.n_bins == 400
        assert QCStage.ISOLATION_TREE.value not in result.skipped_stages
        assert result.it_percentage + result.mad_percentage > 0.0
        # Bins 180..218 lie entirely inside the burst
        assert result.bin_outliers[180:219].all()
        assert not result.good_cells[90_000:110_000].any()
        assert 10.0 <= result.percentage_removed < 50.0

    def test_mad_only_mode(self, burst_table):
        result = run_qc(
            burst_table(), _config(determine_good_cells=QCMode.MAD), backend="cpu"
        )
        assert result.it_percentage is None
        assert result.mad_percentage > 0.0
        assert not result.good_cells[9_000:11_000].any()

    def test_isolation_tree_mode(self, burst_table):
        result = run_qc(
            burst_table(),
            _config(determine_good_cells=QCMode.ISOLATION_TREE, force_it=50),
            backend="cpu",
        )
        assert result.it_scores.shape == (result.n_bins,)
        assert result.it_percentage is not None
        assert result.mad_percentage is None
        assert QCStage.ISOLATION_TREE.value not in result.skipped_stages

    def test_none_mode_keeps_everything(self, burst_table):
        result = run_qc(
            burst_table(), _config(determine_good_cells=QCMode.NONE), backend="cpu"
        )
        assert result.good_cells.all()
        assert result.percentage_removed == 0.0
        assert result.it_percentage is None
        assert result.mad_percentage is None
        assert result.consecutive_percentage is None
        assert sorted(result.peaks) == CHANNELS


class TestInputs:
    """Channel selection, pre-filter masks and bin sizing."""

    def test_no_channels(self, event_table):
        with pytest.raises(ConfigError):
            run_qc(event_table(), QCConfig(), backend="cpu")

    def test_missing_channel(self, event_table):
        with pytest.raises(ChannelNotFound):
            run_qc(event_table(), _config(channels=["FSC-A", "CD3"]), backend="cpu")

    def test_missing_channel_skipped(self, event_table):
        config = _config(channels=["FSC-A", "CD3"], skip_missing_channels=True)
        result = run_qc(event_table(), config, backend="cpu")
        assert result.skipped_channels == ["CD3"]
        assert list(result.peaks) == ["FSC-A"]

    def test_invalid_channel(self, gaussian_events):
        columns = gaussian_events()
        columns["label"] = np.array(["cd4"] * 20_000)
        with pytest.raises(InvalidChannel):
            run_qc(ArrayEventTable(columns), _config(channels=["FSC-A", "label"]), backend="cpu")

    def test_invalid_channel_skipped(self, gaussian_events):
        columns = gaussian_events()
        columns["label"] = np.array(["cd4"] * 20_000)
        config = _config(channels=["FSC-A", "label"], skip_missing_channels=True)
        result = run_qc(ArrayEventTable(columns), config, backend="cpu")
        assert result.skipped_channels == ["label"]
        assert list(result.peaks) == ["FSC-A"]

    def test_all_channels_missing(self, event_table):
        config = _config(channels=["CD3"], skip_missing_channels=True)
        with pytest.raises(ConfigError):
            run_qc(event_table(), config, backend="cpu")

    def test_good_events_mask(self, event_table):
        good_events = np.ones(20_000, dtype=bool)
        good_events[:1_000] = False
        result = run_qc(event_table(), _config(), good_events=good_events, backend="cpu")

        assert result.good_cells.shape == (20_000,)
        assert not result.good_cells[:1_000].any()
        assert result.n_bins == len(create_breaks(19_000, 500))

    def test_good_events_wrong_length(self, event_table):
        with pytest.raises(ConfigError):
            run_qc(event_table(), _config(), good_events=np.ones(10, dtype=bool), backend="cpu")

    def test_fixed_events_per_bin(self, event_table):
        result = run_qc(event_table(), _config(events_per_bin=1_000), backend="cpu")
        assert result.events_per_bin == 1_000
        assert result.n_bins == len(create_breaks(20_000, 1_000))

    def test_too_few_bins(self, event_table):
        result = run_qc(event_table(n_events=150), _config(events_per_bin=200), backend="cpu")
        assert result.n_bins == 2
        assert result.good_cells.all()
        assert QCStage.PEAK_DETECTION.value in result.skipped_stages
        assert result.peaks == {}

    def test_empty_table(self):
        table = ArrayEventTable({name: np.array([]) for name in CHANNELS})
        with pytest.raises(ConfigError):
            run_qc(table, _config(), backend="cpu")


class TestPipelineControl:
    """Cancellation, presets and YAML-driven construction."""

    def test_cancelled(self, event_table):
        assert run_qc(event_table(), _config(), backend="cpu", should_cancel=lambda: True) is None

    def test_from_preset(self):
        pipeline = QCPipeline.from_preset("strict", channels=CHANNELS)
        assert pipeline.config.mad == 4.0
        assert pipeline.config.channels == CHANNELS

    def test_unknown_preset(self):
        with pytest.raises(ConfigError):
            QCPipeline.from_preset("paranoid")

    def test_config_path(self, tmp_path, event_table):
        path = tmp_path / "qc.yaml"
        _config(determine_good_cells=QCMode.NONE).to_yaml(str(path))
        result = QCPipeline(config_path=str(path)).run(event_table(), backend="cpu")
        assert result.good_cells.all()

    def test_monotonic_drift_reported(self, gaussian_events):
        columns = gaussian_events()
        columns["SSC-A"] += np.linspace(0.0, 10.0, 20_000)
        result = run_qc(ArrayEventTable(columns), _config(), backend="cpu")
        assert "SSC-A" in result.monotonic.increasing

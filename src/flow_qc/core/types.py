"""
Flow QC - Core Type Definitions

Data model shared by every pipeline stage: the event-table accessor
contract, bins, detected peaks and QC modes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

import numpy as np

from flow_qc.core.errors import ChannelNotFound, InvalidChannel

# Half-open [start, end) range over event indices
Bin = tuple[int, int]


class QCMode(str, Enum):
    """Which anomaly detectors the orchestrator runs."""

    ALL = "all"  # Isolation Tree, then MAD over the IT survivors
    ISOLATION_TREE = "isolation_tree"
    MAD = "mad"
    NONE = "none"  # Peak detection only, every event kept

    @property
    def runs_isolation_tree(self) -> bool:
        return self in (QCMode.ALL, QCMode.ISOLATION_TREE)

    @property
    def runs_mad(self) -> bool:
        return self in (QCMode.ALL, QCMode.MAD)


# ==============================================================================
# Event table accessor contract
# ==============================================================================


@runtime_checkable
class EventTable(Protocol):
    """
    Columnar view over events ordered by acquisition time.

    Implemented by the file-format layer; the pipeline only reads through it.
    """

    def n_events(self) -> int: ...

    def channel_names(self) -> list[str]: ...

    def get_channel_as_f64(self, name: str) -> np.ndarray: ...

    def get_channel_range(self, name: str) -> tuple[float, float] | None: ...


class ArrayEventTable:
    """
    In-memory EventTable over a mapping of channel name -> 1-D array.

    All columns must have the same length. Detector ranges are optional and
    are only threaded through for upstream margin removal.
    """

    def __init__(
        self,
        columns: Mapping[str, np.ndarray],
        ranges: Mapping[str, tuple[float, float]] | None = None,
    ):
        self._columns = {name: np.asarray(values) for name, values in columns.items()}
        self._ranges = dict(ranges or {})

        lengths = {len(values) for values in self._columns.values()}
        if len(lengths) > 1:
            raise ValueError(f"All channels must have the same length, got {sorted(lengths)}")
        self._n_events = lengths.pop() if lengths else 0

    def n_events(self) -> int:
        return self._n_events

    def channel_names(self) -> list[str]:
        return list(self._columns)

    def get_channel_as_f64(self, name: str) -> np.ndarray:
        if name not in self._columns:
            raise ChannelNotFound(name, self.channel_names())
        values = self._columns[name]
        if not (np.issubdtype(values.dtype, np.number) or values.dtype == np.bool_):
            raise InvalidChannel(name, f"dtype {values.dtype} is not numeric")
        return values.astype(np.float64, copy=False)

    def get_channel_range(self, name: str) -> tuple[float, float] | None:
        if name not in self._columns:
            raise ChannelNotFound(name, self.channel_names())
        return self._ranges.get(name)

    def subset(self, keep: np.ndarray) -> ArrayEventTable:
        """Return a table restricted to events where ``keep`` is True."""
        keep = np.asarray(keep, dtype=bool)
        return ArrayEventTable(
            {name: values[keep] for name, values in self._columns.items()}, self._ranges
        )


# ==============================================================================
# Peak detection output
# ==============================================================================


@dataclass(frozen=True)
class PeakInfo:
    """One local density maximum of one channel in one bin."""

    bin: int
    peak_value: float
    cluster: int


@dataclass
class ChannelPeakFrame:
    """All peaks of one channel across all bins, ordered by bin then value."""

    peaks: list[PeakInfo] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.peaks)

    def clusters(self) -> list[int]:
        """Sorted cluster ids present in this frame."""
        return sorted({p.cluster for p in self.peaks})

    def bins(self) -> list[int]:
        """Sorted bin indices holding at least one peak."""
        return sorted({p.bin for p in self.peaks})

    def values_by_bin(self) -> dict[int, list[float]]:
        """Peak values grouped by bin index."""
        grouped: dict[int, list[float]] = {}
        for peak in self.peaks:
            grouped.setdefault(peak.bin, []).append(peak.peak_value)
        return grouped

    def cluster_values(self, cluster: int) -> list[tuple[int, float]]:
        """(bin, value) pairs of one cluster."""
        return [(p.bin, p.peak_value) for p in self.peaks if p.cluster == cluster]

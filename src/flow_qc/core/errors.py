"""
Flow QC - Error Taxonomy

All errors raised by the QC pipeline derive from QCError so callers can
catch the whole family at once. GPU failures never surface here; they are
downgraded to the CPU path inside the numeric backend.
"""

from __future__ import annotations


class QCError(Exception):
    """Base class for QC pipeline errors."""


class ConfigError(QCError, ValueError):
    """Invalid configuration (thresholds, zero events per bin, no channels)."""


class ChannelNotFound(QCError, KeyError):
    """Requested channel is not present in the event table."""

    def __init__(self, channel: str, available: list[str] | None = None):
        self.channel = channel
        self.available = list(available) if available is not None else None
        super().__init__(channel)

    def __str__(self) -> str:
        msg = f"Channel not found: {self.channel!r}"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        return msg


class InvalidChannel(QCError):
    """Channel exists but cannot be read as float64 values."""

    def __init__(self, channel: str, reason: str = ""):
        self.channel = channel
        self.reason = reason
        super().__init__(f"Invalid channel {channel!r}: {reason}" if reason else channel)


class StatsError(QCError):
    """Statistical computation failed (empty data, degenerate grid, bad FFT size)."""


class InsufficientData(QCError):
    """Not enough events or bins for a stage to be meaningful."""

    def __init__(self, minimum: int, actual: int, what: str = "events"):
        self.minimum = minimum
        self.actual = actual
        self.what = what
        super().__init__(f"Insufficient data: need at least {minimum} {what}, got {actual}")


class NoPeaksDetected(QCError):
    """A channel (or every channel) produced zero peaks across all bins."""

    def __init__(self, channel: str | None = None):
        self.channel = channel
        super().__init__(
            f"No peaks detected for channel {channel!r}" if channel else "No peaks detected"
        )

"""Signal intake -- validation and normalization of inbound signals and outcome callbacks."""

from tradetree.signals.normalizer import SignalNormalizer, normalize_timeframe
from tradetree.signals.outcomes import parse_outcome

__all__ = ["SignalNormalizer", "normalize_timeframe", "parse_outcome"]

"""Evidence records and confidence fusion."""

from __future__ import annotations

from dataclasses import dataclass

from revoffsets.config import defaults
from revoffsets.config.models import ResolverConfig
from revoffsets.snapshot.models import Method


@dataclass(frozen=True)
class Weights:
    symbol: float = defaults.DEFAULT_SYMBOL_WEIGHT
    pattern: float = defaults.DEFAULT_PATTERN_WEIGHT
    xref: float = defaults.DEFAULT_XREF_WEIGHT
    xref_cap: float = defaults.DEFAULT_XREF_CAP
    structure: float = defaults.DEFAULT_STRUCTURE_WEIGHT
    caller: float = defaults.DEFAULT_CALLER_WEIGHT
    min_confidence: float = defaults.DEFAULT_MIN_CONFIDENCE

    @classmethod
    def from_config(cls, cfg: ResolverConfig) -> Weights:
        return cls(
            symbol=cfg.symbol_weight,
            pattern=cfg.pattern_weight,
            xref=cfg.xref_weight,
            xref_cap=cfg.xref_cap,
            structure=cfg.structure_weight,
            caller=cfg.caller_weight,
            min_confidence=cfg.min_confidence,
        )


@dataclass(frozen=True)
class Evidence:
    """Signals observed for one candidate address of one target."""

    address: int
    symbol_hit: bool = False
    pattern_specificity: float = 0.0
    pattern_matches: int = 0
    xref_count: int = 0
    structural_consistency: float = 0.0
    # 1/n when proposed as one of n callers of an already resolved target
    caller_share: float = 0.0

    def contributions(self, weights: Weights) -> dict[Method, float]:
        pattern = 0.0
        if self.pattern_matches > 0:
            pattern = weights.pattern * self.pattern_specificity / self.pattern_matches
        return {
            "symbol": weights.symbol if self.symbol_hit else 0.0,
            "pattern": pattern,
            "xref": min(weights.xref * self.xref_count, weights.xref_cap) + weights.caller * self.caller_share,
            "structure": weights.structure * self.structural_consistency,
        }


def compute_confidence(evidence: Evidence, weights: Weights) -> float:
    """Weighted sum of the evidence signals, clamped to [0, 1]."""
    total = sum(evidence.contributions(weights).values())
    return max(0.0, min(1.0, total))


def dominant_method(evidence: Evidence, weights: Weights) -> Method:
    parts = evidence.contributions(weights)
    best: Method = "none"
    best_value = 0.0
    for method, value in parts.items():
        if value > best_value:
            best, best_value = method, value
    return best

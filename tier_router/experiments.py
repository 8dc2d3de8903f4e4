"""
A/B experiments for Tier Router.

Experiments are defined globally by id with a ``control`` and a
``treatment`` variant, each a partial override of tier and/or provider.
Each client is assigned a variant the first time it is routed under an
experiment, and keeps it for the life of the process.

Re-enrolling an experiment id replaces its variant definitions for every
client, including ones already assigned; their variant names stay the same.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .tiers import Tier

_log = logging.getLogger(__name__)

CONTROL = "control"
TREATMENT = "treatment"
VARIANTS = (CONTROL, TREATMENT)

# winner() needs this many outcomes per variant and this quality gap.
MIN_OUTCOMES_FOR_WINNER = 10
MIN_QUALITY_GAP = 0.05


@dataclass(frozen=True)
class VariantOverride:
    """Partial routing override applied to clients in one variant."""
    tier: Optional[Tier] = None
    provider: Optional[str] = None

    def __post_init__(self) -> None:
        if self.tier is not None:
            object.__setattr__(self, "tier", Tier.parse(self.tier))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value if self.tier else None,
            "provider": self.provider,
        }


@dataclass(frozen=True)
class ExperimentConfig:
    """Variant definitions for one experiment."""
    control: VariantOverride = field(default_factory=VariantOverride)
    treatment: VariantOverride = field(default_factory=VariantOverride)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentConfig":
        return cls(
            control=VariantOverride(**(data.get(CONTROL) or {})),
            treatment=VariantOverride(**(data.get(TREATMENT) or {})),
        )

    def variant(self, name: str) -> VariantOverride:
        return self.control if name == CONTROL else self.treatment


@dataclass
class ExperimentOutcome:
    """Reported result of one routed request."""
    success: bool = True
    quality_score: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ExperimentRegistry:
    """Experiment definitions, sticky assignments and outcomes.

    Assignment is an atomic check-or-assign under a lock, so two concurrent
    first-time calls for the same client and experiment always agree.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        """
        Args:
            rng: Random source for assignments; pass a seeded
                ``random.Random`` for reproducible runs.
        """
        self._rng = rng if rng is not None else random.Random()
        self._lock = threading.Lock()
        self._experiments: Dict[str, ExperimentConfig] = {}
        self._assignments: Dict[Tuple[str, str], str] = {}
        # request_id → (experiment_id, variant)
        self._requests: Dict[str, Tuple[str, str]] = {}
        self._outcomes: Dict[str, ExperimentOutcome] = {}

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def enroll(self, experiment_id: str,
               config: Union[ExperimentConfig, Dict[str, Any]]) -> None:
        """Store or replace the variant definitions for *experiment_id*."""
        if not isinstance(config, ExperimentConfig):
            config = ExperimentConfig.from_dict(config)
        with self._lock:
            replaced = experiment_id in self._experiments
            self._experiments[experiment_id] = config
        _log.info("Experiment %s %s", experiment_id, "redefined" if replaced else "enrolled")

    def get_config(self, experiment_id: str) -> Optional[ExperimentConfig]:
        with self._lock:
            return self._experiments.get(experiment_id)

    def experiment_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._experiments)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def get_variant(self, client_id: str, experiment_id: str) -> str:
        """Return the client's variant, assigning one uniformly at random on
        first reference.

        Returns:
            ``"control"`` or ``"treatment"``.
        """
        key = (client_id, experiment_id)
        with self._lock:
            variant = self._assignments.get(key)
            if variant is None:
                variant = self._rng.choice(VARIANTS)
                self._assignments[key] = variant
                _log.debug("Assigned %s to %s in experiment %s", variant, client_id, experiment_id)
            return variant

    def peek_variant(self, client_id: str, experiment_id: str) -> Optional[str]:
        """Return the existing assignment without creating one."""
        with self._lock:
            return self._assignments.get((client_id, experiment_id))

    def get_override(self, experiment_id: str, variant: str) -> Optional[VariantOverride]:
        """Return the override for *variant*, or None if the experiment is
        not enrolled."""
        config = self.get_config(experiment_id)
        if config is None:
            return None
        return config.variant(variant)

    def tag_request(self, request_id: str, experiment_id: str, variant: str) -> None:
        """Remember which experiment and variant a routed request belongs to."""
        with self._lock:
            self._requests[request_id] = (experiment_id, variant)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, request_id: str,
                       outcome: Union[ExperimentOutcome, Dict[str, Any]]) -> bool:
        """Store the outcome of a routed request.

        Returns:
            True if the request was routed under an experiment. Outcomes for
            any other request are dropped and False is returned.
        """
        if not isinstance(outcome, ExperimentOutcome):
            outcome = ExperimentOutcome(**outcome)
        with self._lock:
            if request_id not in self._requests:
                return False
            self._outcomes[request_id] = outcome
            return True

    def get_stats(self, experiment_id: str) -> Dict[str, Any]:
        """Return enrollment and outcome statistics for *experiment_id*."""
        with self._lock:
            defined = experiment_id in self._experiments
            enrolled = {v: 0 for v in VARIANTS}
            for (_, exp_id), variant in self._assignments.items():
                if exp_id == experiment_id:
                    enrolled[variant] += 1
            requests = {v: 0 for v in VARIANTS}
            outcomes: Dict[str, List[ExperimentOutcome]] = {v: [] for v in VARIANTS}
            for request_id, (exp_id, variant) in self._requests.items():
                if exp_id != experiment_id:
                    continue
                requests[variant] += 1
                if request_id in self._outcomes:
                    outcomes[variant].append(self._outcomes[request_id])

        variants = {}
        for name in VARIANTS:
            results = outcomes[name]
            qualities = [o.quality_score for o in results if o.quality_score is not None]
            variants[name] = {
                "clients": enrolled[name],
                "requests": requests[name],
                "outcomes": len(results),
                "success_rate": (
                    round(sum(1 for o in results if o.success) / len(results), 4)
                    if results else None
                ),
                "avg_quality": round(sum(qualities) / len(qualities), 4) if qualities else None,
            }

        return {
            "experiment_id": experiment_id,
            "defined": defined,
            "enrolled_clients": sum(enrolled.values()),
            "outcome_count": sum(v["outcomes"] for v in variants.values()),
            "variants": variants,
            "winner": self._winner(variants),
        }

    @staticmethod
    def _winner(variants: Dict[str, Dict[str, Any]]) -> Optional[str]:
        """Return the better variant, or None (too early / too close)."""
        control = variants[CONTROL]
        treatment = variants[TREATMENT]
        if (control["outcomes"] < MIN_OUTCOMES_FOR_WINNER
                or treatment["outcomes"] < MIN_OUTCOMES_FOR_WINNER):
            return None
        qc = control["avg_quality"] if control["avg_quality"] is not None else 0.5
        qt = treatment["avg_quality"] if treatment["avg_quality"] is not None else 0.5
        if abs(qc - qt) < MIN_QUALITY_GAP:
            return None
        return CONTROL if qc > qt else TREATMENT

"""
Complexity assessment for Tier Router.

Scores a task on five independent factors (context size, reasoning depth,
creative demand, precision need, domain specificity), combines them into a
weighted overall score with a confidence, and maps the score onto a tier.
Assessment never fails: unrecognised task types use a neutral baseline.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple, Union

from .config import Config
from .tiers import AnyTaskType, TaskType, Tier, UnknownTaskType, parse_task_type

_log = logging.getLogger(__name__)

FACTOR_NAMES = (
    'context_size',
    'reasoning_depth',
    'creative_demand',
    'precision_need',
    'domain_specificity',
)

DEFAULT_WEIGHTS = {
    'context_size': 0.2,
    'reasoning_depth': 0.3,
    'creative_demand': 0.2,
    'precision_need': 0.2,
    'domain_specificity': 0.1,
}

DEFAULT_PREMIUM_THRESHOLD = 0.7
DEFAULT_STANDARD_THRESHOLD = 0.4

# Context saturates at this many tokens.
CONTEXT_SATURATION_TOKENS = 50_000
KEYWORD_BOOST = 0.05
MAX_KEYWORD_HITS = 6
PRECISION_BOOST = 0.1
PRECISION_CHARS_PER_STEP = 500
MAX_PRECISION_STEPS = 2


@dataclass(frozen=True)
class ComplexityFactors:
    """Five independent complexity dimensions, each in [0, 1]."""
    context_size: float = 0.5
    reasoning_depth: float = 0.5
    creative_demand: float = 0.5
    precision_need: float = 0.5
    domain_specificity: float = 0.5

    def __post_init__(self) -> None:
        for name in FACTOR_NAMES:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    def values(self) -> Tuple[float, ...]:
        return tuple(getattr(self, name) for name in FACTOR_NAMES)

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in FACTOR_NAMES}


NEUTRAL_BASELINE = ComplexityFactors()

# Per task type: (context, reasoning, creative, precision, domain).
# The context entry is informational; context_size is always measured.
TASK_BASELINES: Dict[TaskType, ComplexityFactors] = {
    TaskType.CAPTION: ComplexityFactors(0.1, 0.2, 0.7, 0.3, 0.2),
    TaskType.HASHTAGS: ComplexityFactors(0.05, 0.1, 0.4, 0.3, 0.2),
    TaskType.SHORT_POST: ComplexityFactors(0.1, 0.3, 0.6, 0.4, 0.3),
    TaskType.LONG_FORM: ComplexityFactors(0.4, 0.6, 0.7, 0.6, 0.5),
    TaskType.REPLY: ComplexityFactors(0.2, 0.3, 0.4, 0.4, 0.3),
    TaskType.SUMMARY: ComplexityFactors(0.5, 0.4, 0.2, 0.6, 0.3),
    TaskType.CLASSIFICATION: ComplexityFactors(0.1, 0.3, 0.05, 0.7, 0.3),
    TaskType.TRANSLATION: ComplexityFactors(0.2, 0.3, 0.3, 0.8, 0.4),
    TaskType.ANALYSIS: ComplexityFactors(0.5, 0.8, 0.2, 0.7, 0.6),
    TaskType.STRATEGY: ComplexityFactors(0.5, 0.9, 0.6, 0.6, 0.7),
    TaskType.CODE: ComplexityFactors(0.4, 0.8, 0.2, 0.9, 0.7),
    TaskType.EXTRACTION: ComplexityFactors(0.3, 0.3, 0.05, 0.8, 0.4),
}


@dataclass
class ComplexityScore:
    """Result of assessing one task."""
    overall: float
    factors: ComplexityFactors
    confidence: float
    recommended_tier: Tier
    reasoning: str
    task_type: str = ""
    degraded: bool = False
    tracking_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overall': round(self.overall, 4),
            'factors': {k: round(v, 4) for k, v in self.factors.to_dict().items()},
            'confidence': round(self.confidence, 4),
            'recommended_tier': self.recommended_tier.value,
            'reasoning': self.reasoning,
            'task_type': self.task_type,
            'degraded': self.degraded,
            'tracking_id': self.tracking_id,
        }


@dataclass
class AssessmentOutcome:
    """What actually happened to a tracked assessment."""
    actual_tier: Tier
    success: bool
    quality_score: Optional[float] = None


@dataclass
class AssessmentTask:
    """One item for :meth:`ComplexityAssessor.assess_batch`."""
    task_type: Union[AnyTaskType, str]
    context_tokens: int = 0
    instructions: str = ""
    tracking_id: Optional[str] = None


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _variance(values: Iterable[float]) -> float:
    values = list(values)
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def _parse_baselines(raw: Dict[str, Dict[str, float]],
                     base: Dict[TaskType, ComplexityFactors]) -> Dict[TaskType, ComplexityFactors]:
    """Merge ``{task_type: {factor: value}}`` settings over *base*.

    Factors left out of an entry keep the value from *base*.
    """
    parsed: Dict[TaskType, ComplexityFactors] = {}
    for label, factors in raw.items():
        task = parse_task_type(label)
        if isinstance(task, UnknownTaskType):
            raise ValueError(f"Baseline for unknown task type {label!r}")
        unknown = set(factors) - set(FACTOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown baseline factor(s) for {task.value}: {sorted(unknown)}")
        current = base.get(task, NEUTRAL_BASELINE)
        parsed[task] = replace(current, **{k: float(v) for k, v in factors.items()})
    return parsed


def _compile_keywords(keywords: Iterable[str]) -> List[Pattern]:
    return [
        re.compile(r'\b' + re.escape(kw.lower()) + r'\b', re.IGNORECASE)
        for kw in keywords if kw and kw.strip()
    ]


class ComplexityAssessor:
    """Scores tasks on five complexity factors and recommends a tier.

    Assessments share no mutable state, so :meth:`assess` may be called from
    many threads at once. Only the optional accuracy tracking is shared, and
    it is guarded by a lock.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        weights: Optional[Dict[str, float]] = None,
        premium_threshold: Optional[float] = None,
        standard_threshold: Optional[float] = None,
        baselines: Optional[Dict[TaskType, ComplexityFactors]] = None,
        reasoning_keywords: Optional[Iterable[str]] = None,
        creativity_keywords: Optional[Iterable[str]] = None,
    ):
        """Initialize the assessor.

        Args:
            config: Configuration supplying default weights, thresholds and
                keyword lists. Uses the packaged defaults when omitted.
            weights: Per-factor weight overrides; unspecified factors keep
                their defaults.
            premium_threshold: Overall score at or above which a task is
                premium.
            standard_threshold: Overall score at or above which a task is
                standard.
            baselines: Per task type baseline overrides; these win over
                baselines from *config*.
            reasoning_keywords: Replaces the configured reasoning keywords.
            creativity_keywords: Replaces the configured creativity keywords.

        Raises:
            ValueError: On negative or unknown weights, thresholds that
                are not ``0 <= standard <= premium <= 1``, or configured
                baselines naming an unknown task type or factor.
        """
        config = config if config is not None else Config()

        merged = dict(DEFAULT_WEIGHTS)
        merged.update(config.get_weights())
        merged.update(weights or {})
        unknown = set(merged) - set(FACTOR_NAMES)
        if unknown:
            raise ValueError(f"Unknown weight(s): {sorted(unknown)}")
        negative = [name for name, w in merged.items() if w < 0]
        if negative:
            raise ValueError(f"Weights must be >= 0, got negative {negative}")
        self.weights: Dict[str, float] = merged

        thresholds = config.get_thresholds()
        self.premium_threshold = (
            premium_threshold if premium_threshold is not None
            else thresholds.get('premium', DEFAULT_PREMIUM_THRESHOLD)
        )
        self.standard_threshold = (
            standard_threshold if standard_threshold is not None
            else thresholds.get('standard', DEFAULT_STANDARD_THRESHOLD)
        )
        if not 0.0 <= self.standard_threshold <= self.premium_threshold <= 1.0:
            raise ValueError(
                "Thresholds must satisfy 0 <= standard <= premium <= 1, got "
                f"standard={self.standard_threshold}, premium={self.premium_threshold}"
            )

        self.baselines: Dict[TaskType, ComplexityFactors] = dict(TASK_BASELINES)
        self.baselines.update(_parse_baselines(config.get_baselines(), self.baselines))
        self.baselines.update(baselines or {})

        self._reasoning_patterns = _compile_keywords(
            reasoning_keywords if reasoning_keywords is not None
            else config.get_reasoning_keywords()
        )
        self._creativity_patterns = _compile_keywords(
            creativity_keywords if creativity_keywords is not None
            else config.get_creativity_keywords()
        )

        self._lock = threading.Lock()
        self._predictions: Dict[str, Tier] = {}
        self._outcomes: Dict[str, AssessmentOutcome] = {}

    # ── Scoring ───────────────────────────────────────────────────────────

    def assess(self, task_type: Union[AnyTaskType, str], context_tokens: int,
               instructions: str = "", tracking_id: Optional[str] = None) -> ComplexityScore:
        """Assess a task and recommend a tier.

        Args:
            task_type: Task category; unknown labels get a neutral baseline.
            context_tokens: Size of the input context in tokens.
            instructions: Free-text task instructions.
            tracking_id: When given, the recommendation is remembered so a
                later :meth:`record_outcome` can score its accuracy.

        Returns:
            ComplexityScore with factors, overall score, confidence and tier.
        """
        task = parse_task_type(task_type)
        text = instructions or ""
        reasoning: List[str] = []

        if isinstance(task, UnknownTaskType):
            baseline = NEUTRAL_BASELINE
            degraded = True
            reasoning.append(f"unrecognized task type {task.raw!r}, neutral baseline")
            _log.debug("Unrecognized task type %r; using neutral baseline", task.raw)
        else:
            baseline = self.baselines.get(task, NEUTRAL_BASELINE)
            degraded = False
            reasoning.append(f"task type {task.value}")

        tokens = max(0, context_tokens or 0)
        context_size = min(1.0, tokens / CONTEXT_SATURATION_TOKENS)

        reasoning_hits = self._count_hits(self._reasoning_patterns, text)
        creative_hits = self._count_hits(self._creativity_patterns, text)
        reasoning_depth = min(
            1.0, baseline.reasoning_depth + KEYWORD_BOOST * min(MAX_KEYWORD_HITS, reasoning_hits))
        creative_demand = min(
            1.0, baseline.creative_demand + KEYWORD_BOOST * min(MAX_KEYWORD_HITS, creative_hits))
        precision_need = min(
            1.0, baseline.precision_need + PRECISION_BOOST * min(
                MAX_PRECISION_STEPS, len(text) / PRECISION_CHARS_PER_STEP))

        factors = ComplexityFactors(
            context_size=context_size,
            reasoning_depth=reasoning_depth,
            creative_demand=creative_demand,
            precision_need=precision_need,
            domain_specificity=baseline.domain_specificity,
        )

        overall = _clamp(sum(
            getattr(factors, name) * self.weights[name] for name in FACTOR_NAMES
        ))
        confidence = _clamp(
            0.7 * (1.0 - _variance(factors.values())) + 0.3 * (2.0 * abs(overall - 0.5))
        )
        tier = self.score_to_tier(overall)

        reasoning.append(f"context {tokens} tokens ({context_size:.2f})")
        if reasoning_hits:
            reasoning.append(f"{reasoning_hits} reasoning keyword(s)")
        if creative_hits:
            reasoning.append(f"{creative_hits} creativity keyword(s)")
        reasoning.append(f"overall {overall:.2f} (confidence {confidence:.2f}) -> {tier.value}")

        if tracking_id is not None:
            with self._lock:
                self._predictions[tracking_id] = tier

        return ComplexityScore(
            overall=overall,
            factors=factors,
            confidence=confidence,
            recommended_tier=tier,
            reasoning="; ".join(reasoning),
            task_type=task.value,
            degraded=degraded,
            tracking_id=tracking_id,
        )

    def assess_batch(self, tasks: Iterable[Union[AssessmentTask, Dict[str, Any]]],
                     max_workers: Optional[int] = None) -> List[ComplexityScore]:
        """Assess several tasks independently.

        Args:
            tasks: AssessmentTask objects or dicts with the same keys.
            max_workers: Run on a thread pool of this size when > 1.

        Returns:
            Scores in input order.
        """
        items = [t if isinstance(t, AssessmentTask) else AssessmentTask(**t) for t in tasks]

        def _one(item: AssessmentTask) -> ComplexityScore:
            return self.assess(item.task_type, item.context_tokens,
                               item.instructions, item.tracking_id)

        if max_workers and max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                return list(pool.map(_one, items))
        return [_one(item) for item in items]

    def score_to_tier(self, score: float) -> Tier:
        """Map an overall score onto a tier using this instance's thresholds."""
        if score >= self.premium_threshold:
            return Tier.PREMIUM
        if score >= self.standard_threshold:
            return Tier.STANDARD
        return Tier.ECONOMY

    @staticmethod
    def _count_hits(patterns: List[Pattern], text: str) -> int:
        if not text:
            return 0
        return sum(len(p.findall(text)) for p in patterns)

    # ── Accuracy tracking ─────────────────────────────────────────────────

    def record_outcome(self, tracking_id: str, actual_tier: Union[Tier, str],
                       success: bool, quality_score: Optional[float] = None) -> None:
        """Record what tier a tracked task actually needed.

        Args:
            tracking_id: Id passed to :meth:`assess`.
            actual_tier: Tier that turned out to be appropriate.
            success: Whether the task succeeded.
            quality_score: Optional 0.0-1.0 quality rating.
        """
        outcome = AssessmentOutcome(
            actual_tier=Tier.parse(actual_tier),
            success=bool(success),
            quality_score=_clamp(float(quality_score)) if quality_score is not None else None,
        )
        with self._lock:
            self._outcomes[tracking_id] = outcome

    def get_accuracy_metrics(self) -> Dict[str, Any]:
        """Report how often the recommended tier matched the actual one.

        Only tracking ids with both an assessment and an outcome count.

        Returns:
            Dict with total, correct, accuracy, success_rate, avg_quality and
            a per-predicted-tier breakdown.
        """
        with self._lock:
            pairs = [
                (self._predictions[tid], outcome)
                for tid, outcome in self._outcomes.items()
                if tid in self._predictions
            ]

        total = len(pairs)
        correct = sum(1 for predicted, outcome in pairs if predicted == outcome.actual_tier)
        successes = sum(1 for _, outcome in pairs if outcome.success)
        qualities = [o.quality_score for _, o in pairs if o.quality_score is not None]

        by_tier: Dict[str, Dict[str, Any]] = {}
        for predicted, outcome in pairs:
            row = by_tier.setdefault(predicted.value, {'total': 0, 'correct': 0})
            row['total'] += 1
            if predicted == outcome.actual_tier:
                row['correct'] += 1
        for row in by_tier.values():
            row['accuracy'] = row['correct'] / row['total']

        return {
            'total': total,
            'correct': correct,
            'accuracy': correct / total if total else 0.0,
            'success_rate': successes / total if total else 0.0,
            'avg_quality': round(sum(qualities) / len(qualities), 4) if qualities else None,
            'by_tier': by_tier,
        }

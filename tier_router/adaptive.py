"""
Adaptive router for Tier Router.

Orchestrates one request end to end: complexity assessment, tier override,
sticky experiment variant, budget admission (block or one-step downgrade),
model resolution under client overrides and cost estimation. The
``route_and_execute`` path then drives an injected Executor through the
resolved fallback chain, one attempt at a time.

All state lives on the router instance; build one per tenant set and pass
it where it is needed.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .assessor import ComplexityAssessor, ComplexityScore
from .budget import DEFAULT_WARNING_RATIO, BudgetStatus, check_budget
from .config import ClientConfig, ClientConfigStore, Config
from .errors import ConfigurationError, ExecutionFailure, FallbackExhausted
from .experiments import ExperimentConfig, ExperimentOutcome, ExperimentRegistry
from .ledger import UsageBucket, UsageLedger, UsageRecord, UsageStats
from .registry import FallbackEntry, ModelConfig, TierRegistry
from .tiers import AnyTaskType, Tier

_log = logging.getLogger(__name__)

DEFAULT_OUTPUT_TOKENS = 1000
LATENCY_HIGH = "high"


def _parse_override(value: Union[Tier, str]) -> Tier:
    try:
        return Tier.parse(value)
    except ValueError as exc:
        raise ConfigurationError(str(exc), {"tier_override": str(value)}) from exc


# ── Requests ──────────────────────────────────────────────────────────────────

@dataclass
class RouteRequest:
    """A task to be routed for one client."""
    client_id: str
    task_type: Union[AnyTaskType, str]
    context_tokens: int = 0
    instructions: str = ""
    preferred_provider: Optional[str] = None
    tier_override: Optional[Union[Tier, str]] = None
    expected_output_tokens: Optional[int] = None
    experiment_id: Optional[str] = None
    latency_priority: Optional[str] = None  # "low" | "normal" | "high"
    tracking_id: Optional[str] = None


@dataclass
class ExecuteRequest(RouteRequest):
    """A routed task that should also be executed.

    Attributes:
        cancel_event: Passed to every attempt. Executors should abort and
            fail the attempt when it is set; the router then moves on to
            the next fallback entry.
        payload: Opaque data forwarded to the executor (messages, media...).
    """
    cancel_event: Optional[threading.Event] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolvedRequest:
    """What the executor receives for one attempt."""
    request_id: str
    client_id: str
    attempt: int
    tier: Tier
    provider: str
    model: str
    instructions: str
    context_tokens: int
    max_tokens: int
    temperature: float
    cancel_event: Optional[threading.Event] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class ExecutionOutcome:
    """Result of one executor attempt.

    Token counts and cost are optional; when present they are used to
    charge the client's ledger.
    """
    success: bool
    response: Any = None
    error: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cost: Optional[float] = None


class Executor(Protocol):
    """Single-method capability that runs one resolved attempt."""

    def execute(self, request: ResolvedRequest) -> ExecutionOutcome:
        ...


ExecutorLike = Union[Executor, Callable[[ResolvedRequest], Any]]


@dataclass
class AttemptRecord:
    """One entry tried by route_and_execute."""
    attempt: int
    tier: Tier
    provider: str
    model: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "tier": self.tier.value,
            "provider": self.provider,
            "model": self.model,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class RouteResult:
    """Routing decision bundle.

    Either ``success`` is True and every routing field is filled in, or it
    is False and ``error`` says why.
    """
    success: bool
    request_id: str
    client_id: str
    selected_tier: Tier
    complexity_score: ComplexityScore
    model_config: Optional[ModelConfig] = None
    provider: Optional[str] = None
    estimated_cost: float = 0.0
    error: Optional[str] = None
    budget_warning: bool = False
    override_applied: bool = False
    experiment_variant: Optional[str] = None
    latency_optimized: bool = False
    fallback_used: bool = False
    reasoning: List[str] = field(default_factory=list)
    attempts: List[AttemptRecord] = field(default_factory=list)
    response: Any = None

    @property
    def model(self) -> Optional[str]:
        return self.model_config.model if self.model_config else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to plain dict (telemetry-ready)."""
        return {
            "success": self.success,
            "error": self.error,
            "request_id": self.request_id,
            "client_id": self.client_id,
            "selected_tier": self.selected_tier.value,
            "provider": self.provider,
            "model": self.model,
            "model_config": self.model_config.to_dict() if self.model_config else None,
            "complexity_score": self.complexity_score.to_dict(),
            "estimated_cost": round(self.estimated_cost, 6),
            "budget_warning": self.budget_warning,
            "override_applied": self.override_applied,
            "experiment_variant": self.experiment_variant,
            "latency_optimized": self.latency_optimized,
            "fallback_used": self.fallback_used,
            "reasoning": list(self.reasoning),
            "attempts": [a.to_dict() for a in self.attempts],
        }


# ── Router ────────────────────────────────────────────────────────────────────

class AdaptiveRouter:
    """Routes tasks to a (tier, provider, model) and optionally executes them.

    Features:
    - Five-factor complexity assessment with a tier recommendation
    - Per-client overrides, pinned versions and allowed providers
    - Budget admission: block at the limit, downgrade one tier near it
    - Sticky A/B experiment variants
    - Sequential fallback chains around an injected executor
    - Usage ledger with daily/monthly aggregates
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        *,
        config: Optional[Config] = None,
        registry: Optional[TierRegistry] = None,
        assessor: Optional[ComplexityAssessor] = None,
        ledger: Optional[UsageLedger] = None,
        experiments: Optional[ExperimentRegistry] = None,
        clients: Optional[ClientConfigStore] = None,
        executor: Optional[ExecutorLike] = None,
        default_provider: Optional[str] = None,
        record_usage_on_success: bool = True,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
    ):
        """Initialize the router.

        Args:
            config_path: Directory holding ``config.json``; packaged defaults
                are used when omitted.
            config: Preloaded configuration (takes precedence over
                ``config_path``).
            registry: Tier/provider registry.
            assessor: Complexity assessor.
            ledger: Usage ledger.
            experiments: Experiment registry.
            clients: Client configuration store.
            executor: Default executor for :meth:`route_and_execute`.
            default_provider: Process-wide fallback provider; defaults to the
                configured one.
            record_usage_on_success: Charge the ledger once per successful
                execution. Failed attempts are never charged.
            warning_ratio: Fraction of a budget limit at which requests are
                downgraded one tier.
        """
        if not 0.0 < warning_ratio <= 1.0:
            raise ValueError(f"warning_ratio must be in (0, 1], got {warning_ratio}")

        self.config = config if config is not None else Config(config_path)
        self.registry = registry if registry is not None else TierRegistry(self.config)
        self.assessor = assessor if assessor is not None else ComplexityAssessor(self.config)
        self.ledger = ledger if ledger is not None else UsageLedger()
        self.experiments = experiments if experiments is not None else ExperimentRegistry()
        self.clients = clients if clients is not None else ClientConfigStore(self.config)
        self.executor = executor
        self.default_provider = default_provider or self.registry.default_provider
        self.record_usage_on_success = record_usage_on_success
        self.warning_ratio = warning_ratio

    # ── Routing ───────────────────────────────────────────────────────────

    def route(self, request: RouteRequest) -> RouteResult:
        """Route a task to a tier, provider and model.

        Never writes to the usage ledger.

        Args:
            request: The task to route.

        Returns:
            RouteResult. ``success`` is False only when the client's budget
            is exhausted.

        Raises:
            ConfigurationError: When the tier override names no tier, the
                chosen (tier, provider) is not in the catalog, or a client
                override is malformed.
        """
        request_id = uuid.uuid4().hex
        client = self.clients.get(request.client_id)

        # Step 1: Complexity assessment
        score = self.assessor.assess(
            request.task_type, request.context_tokens,
            request.instructions, request.tracking_id,
        )
        tier = score.recommended_tier
        reasoning = [f"Assessed {tier.value} (overall {score.overall:.2f}, "
                     f"confidence {score.confidence:.2f})"]
        if score.degraded:
            reasoning.append(f"Unrecognized task type {score.task_type!r}; neutral baseline used")

        # Step 2: Explicit override
        override_applied = False
        if request.tier_override is not None:
            tier = _parse_override(request.tier_override)
            override_applied = True
            reasoning.append(f"Tier override: {tier.value}")

        # Step 3: Experiment variant
        variant = None
        variant_provider = None
        if request.experiment_id:
            variant = self.experiments.get_variant(request.client_id, request.experiment_id)
            override = self.experiments.get_override(request.experiment_id, variant)
            if override is None:
                reasoning.append(f"Experiment {request.experiment_id} ({variant}) has no definition")
            else:
                if override.tier is not None:
                    tier = override.tier
                    reasoning.append(f"Experiment {request.experiment_id} ({variant}): tier {tier.value}")
                variant_provider = override.provider

        # Step 4: Budget admission
        budget = self.check_budget(request.client_id, client)
        if not budget.allowed:
            _log.warning("Request %s for %s blocked: %s", request_id, request.client_id, budget.error)
            reasoning.append(str(budget.error))
            return RouteResult(
                success=False,
                request_id=request_id,
                client_id=request.client_id,
                selected_tier=tier,
                complexity_score=score,
                error=str(budget.error),
                override_applied=override_applied,
                experiment_variant=variant,
                reasoning=reasoning,
            )

        # Step 5: Downgrade near the limit
        if budget.warning:
            downgraded = tier.downgrade()
            _log.warning("Client %s at %.0f%% of %s budget; %s -> %s", request.client_id,
                         (budget.utilization or 0.0) * 100, budget.window,
                         tier.value, downgraded.value)
            reasoning.append(f"Budget warning ({budget.window} {budget.utilization:.0%}): "
                             f"downgraded {tier.value} -> {downgraded.value}")
            tier = downgraded

        # Step 6: Provider
        provider = (request.preferred_provider or variant_provider
                    or client.default_provider or self.default_provider)

        # Step 7-8: Resolve and estimate
        model_config = self.registry.resolve(tier, provider, client)
        output_tokens = (request.expected_output_tokens
                         if request.expected_output_tokens is not None else DEFAULT_OUTPUT_TOKENS)
        estimated_cost = self.registry.estimate_cost(
            tier, provider, max(0, request.context_tokens or 0), output_tokens)
        reasoning.append(f"Resolved {provider}/{model_config.model} "
                         f"(est. ${estimated_cost:.6f}, {len(model_config.fallback_chain)} fallback(s))")

        # Step 9: Latency flag
        latency_optimized = request.latency_priority == LATENCY_HIGH and tier == Tier.ECONOMY

        # Only admitted, resolved requests count towards experiment stats
        if variant is not None:
            self.experiments.tag_request(request_id, request.experiment_id, variant)

        _log.debug("Routed %s for %s: %s/%s/%s", request_id, request.client_id,
                   tier.value, provider, model_config.model)

        return RouteResult(
            success=True,
            request_id=request_id,
            client_id=request.client_id,
            selected_tier=tier,
            complexity_score=score,
            model_config=model_config,
            provider=provider,
            estimated_cost=estimated_cost,
            budget_warning=budget.warning,
            override_applied=override_applied,
            experiment_variant=variant,
            latency_optimized=latency_optimized,
            reasoning=reasoning,
        )

    def route_and_execute(self, request: Union[ExecuteRequest, RouteRequest],
                          executor: Optional[ExecutorLike] = None) -> RouteResult:
        """Route a task, then execute it across the fallback chain.

        Attempts run strictly one after another: the primary model, then
        each fallback entry in order. A failed, raising or cancelled attempt
        advances to the next entry and is never retried in place.

        Args:
            request: The task; an ExecuteRequest may carry a cancellation
                event and executor payload.
            executor: Overrides the router's default executor.

        Returns:
            RouteResult with ``response`` on success. When every attempt
            fails, ``success`` is False and ``error`` starts with
            "fallback chain exhausted".

        Raises:
            ValueError: If no executor is available.
            ConfigurationError: As for :meth:`route`.
        """
        executor = executor if executor is not None else self.executor
        if executor is None:
            raise ValueError("route_and_execute requires an executor")
        run = self._as_callable(executor)

        result = self.route(request)
        if not result.success:
            return result

        primary = result.model_config
        cancel_event = getattr(request, "cancel_event", None)
        payload = getattr(request, "payload", None) or {}
        entries: List[FallbackEntry] = [primary.entry] + list(primary.fallback_chain)
        last_error: Optional[str] = None
        # All attempt settings are resolved before the first call
        client = self.clients.get(request.client_id)
        configs = [primary] + [self._fallback_config(entry, primary, client)
                               for entry in entries[1:]]

        for index, entry in enumerate(entries):
            attempt_config = configs[index]
            resolved = ResolvedRequest(
                request_id=result.request_id,
                client_id=request.client_id,
                attempt=index,
                tier=entry.tier,
                provider=entry.provider,
                model=entry.model,
                instructions=request.instructions,
                context_tokens=request.context_tokens,
                max_tokens=attempt_config.max_tokens,
                temperature=attempt_config.temperature,
                cancel_event=cancel_event,
                payload=payload,
            )
            outcome = self._attempt(run, resolved)
            result.attempts.append(AttemptRecord(
                attempt=index,
                tier=entry.tier,
                provider=entry.provider,
                model=entry.model,
                success=outcome.success,
                error=outcome.error,
            ))
            if outcome.success:
                result.fallback_used = index > 0
                result.response = outcome.response
                if index > 0:
                    result.reasoning.append(
                        f"Fallback {index} succeeded on {entry.provider}/{entry.model}")
                if self.record_usage_on_success:
                    self._charge(request, result, entry, outcome)
                return result

            last_error = outcome.error
            _log.warning("Attempt %d for %s failed on %s/%s: %s", index, result.request_id,
                         entry.provider, entry.model, last_error)

        exhausted = FallbackExhausted(len(entries), last_error)
        result.success = False
        result.error = str(exhausted)
        result.reasoning.append(result.error)
        return result

    def _fallback_config(self, entry: FallbackEntry, primary: ModelConfig,
                         client: ClientConfig) -> ModelConfig:
        """Client-resolved settings for a fallback entry, or the primary's
        when the entry is not in the catalog."""
        if not self.registry.has(entry.tier, entry.provider):
            return primary
        return self.registry.resolve(entry.tier, entry.provider, client)

    @staticmethod
    def _as_callable(executor: ExecutorLike) -> Callable[[ResolvedRequest], Any]:
        execute = getattr(executor, "execute", None)
        if callable(execute):
            return execute
        if callable(executor):
            return executor
        raise TypeError(f"Executor must be callable or define execute(), got {executor!r}")

    @staticmethod
    def _attempt(run: Callable[[ResolvedRequest], Any],
                 resolved: ResolvedRequest) -> ExecutionOutcome:
        """Run one attempt, folding exceptions into a failed outcome."""
        try:
            outcome = run(resolved)
        except ExecutionFailure as exc:
            return ExecutionOutcome(success=False, error=str(exc))
        except Exception as exc:
            return ExecutionOutcome(success=False, error=f"{type(exc).__name__}: {exc}")
        if isinstance(outcome, ExecutionOutcome):
            if not outcome.success and not outcome.error:
                outcome.error = "executor reported failure"
            return outcome
        if outcome is None:
            return ExecutionOutcome(success=False, error="executor returned no outcome")
        return ExecutionOutcome(success=True, response=outcome)

    def _charge(self, request: RouteRequest, result: RouteResult,
                entry: FallbackEntry, outcome: ExecutionOutcome) -> None:
        """Record one usage entry for a successful attempt."""
        if outcome.input_tokens is not None or outcome.output_tokens is not None:
            input_tokens = outcome.input_tokens or 0
            output_tokens = outcome.output_tokens or 0
        else:
            input_tokens = max(0, request.context_tokens or 0)
            output_tokens = (request.expected_output_tokens
                             if request.expected_output_tokens is not None
                             else DEFAULT_OUTPUT_TOKENS)

        if outcome.cost is not None:
            cost = outcome.cost
        elif self.registry.has(entry.tier, entry.provider):
            cost = self.registry.estimate_cost(entry.tier, entry.provider,
                                               input_tokens, output_tokens)
        else:
            cost = result.estimated_cost

        self.ledger.record_usage(
            request.client_id,
            cost=cost,
            tokens=input_tokens + output_tokens,
            tier=entry.tier,
            provider=entry.provider,
        )

    def explain(self, request: RouteRequest) -> str:
        """Return a human-readable explanation of how *request* would route.

        Read-only: no experiment variant is assigned and nothing is
        recorded.
        """
        client = self.clients.get(request.client_id)
        score = self.assessor.assess(request.task_type, request.context_tokens,
                                     request.instructions)
        tier = score.recommended_tier
        conf_pct = int(round(score.confidence * 100))
        lines = [
            f"Task classified as '{score.task_type}' -> {tier.value} "
            f"(overall {score.overall:.2f}, {conf_pct}% confidence).",
            "Factors: " + ", ".join(f"{k} {v:.2f}" for k, v in score.factors.to_dict().items()),
        ]
        if score.degraded:
            lines.append("Task type not recognized; neutral baseline used.")

        if request.tier_override is not None:
            tier = _parse_override(request.tier_override)
            lines.append(f"Tier override -> {tier.value}.")

        variant_provider = None
        if request.experiment_id:
            variant = self.experiments.peek_variant(request.client_id, request.experiment_id)
            if variant is None:
                lines.append(f"Experiment {request.experiment_id}: no variant assigned yet.")
            else:
                override = self.experiments.get_override(request.experiment_id, variant)
                if override is not None and override.tier is not None:
                    tier = override.tier
                if override is not None:
                    variant_provider = override.provider
                lines.append(f"Experiment {request.experiment_id}: {variant} -> {tier.value}.")

        budget = self.check_budget(request.client_id, client)
        if not budget.allowed:
            lines.append(f"Blocked: {budget.error}.")
            return "\n".join(lines)
        if budget.warning:
            tier = tier.downgrade()
            lines.append(f"Budget at {budget.utilization:.0%} of {budget.window} limit; "
                         f"downgraded to {tier.value}.")

        provider = (request.preferred_provider or variant_provider
                    or client.default_provider or self.default_provider)
        model_config = self.registry.resolve(tier, provider, client)
        output_tokens = (request.expected_output_tokens
                         if request.expected_output_tokens is not None else DEFAULT_OUTPUT_TOKENS)
        cost = model_config.calculate_cost(max(0, request.context_tokens or 0), output_tokens)
        lines.append(f"Model: {provider}/{model_config.model} "
                     f"(${model_config.cost_per_1k_input:.5f}/1K input, "
                     f"${model_config.cost_per_1k_output:.5f}/1K output; "
                     f"this request ~${cost:.6f}).")
        if model_config.fallback_chain:
            lines.append("Fallbacks: " + ", ".join(
                f"{e.tier.value}/{e.provider}/{e.model}" for e in model_config.fallback_chain))
        return "\n".join(lines)

    # ── Budget ────────────────────────────────────────────────────────────

    def check_budget(self, client_id: str,
                     client: Optional[ClientConfig] = None) -> BudgetStatus:
        """Check a client's current spend against its limits."""
        client = client if client is not None else self.clients.get(client_id)
        if client.max_daily_cost is None and client.max_monthly_cost is None:
            return BudgetStatus()
        return check_budget(client, self.ledger.get_usage_stats(client_id), self.warning_ratio)

    # ── Client configuration ──────────────────────────────────────────────

    def set_client_config(self, client_id: str,
                          client_config: Union[ClientConfig, Dict[str, Any]]) -> None:
        """Replace a client's configuration (whole object, last write wins)."""
        if not isinstance(client_config, ClientConfig):
            client_config = ClientConfig.from_dict(client_config)
        self.clients.set(client_id, client_config)

    def get_client_config(self, client_id: str) -> ClientConfig:
        return self.clients.get(client_id)

    # ── Usage ─────────────────────────────────────────────────────────────

    def record_usage(self, client_id: str, cost: Union[float, UsageRecord] = 0.0,
                     tokens: int = 0, tier: Optional[Union[Tier, str]] = None,
                     provider: Optional[str] = None,
                     timestamp: Optional[datetime] = None) -> UsageRecord:
        return self.ledger.record_usage(client_id, cost, tokens, tier, provider, timestamp)

    def get_usage_stats(self, client_id: str) -> UsageStats:
        return self.ledger.get_usage_stats(client_id)

    def reset_daily_usage(self, client_id: str) -> int:
        return self.ledger.reset_daily_usage(client_id)

    def get_usage_history(self, client_id: str, days: int) -> List[UsageBucket]:
        return self.ledger.get_usage_history(client_id, days)

    # ── Experiments ───────────────────────────────────────────────────────

    def enroll_in_experiment(self, experiment_id: str,
                             config: Union[ExperimentConfig, Dict[str, Any]]) -> None:
        self.experiments.enroll(experiment_id, config)

    def record_experiment_outcome(self, request_id: str,
                                  outcome: Union[ExperimentOutcome, Dict[str, Any]]) -> bool:
        return self.experiments.record_outcome(request_id, outcome)

    def get_experiment_stats(self, experiment_id: str) -> Dict[str, Any]:
        return self.experiments.get_stats(experiment_id)

    # ── Assessment accuracy ───────────────────────────────────────────────

    def record_assessment_outcome(self, tracking_id: str, actual_tier: Union[Tier, str],
                                  success: bool, quality_score: Optional[float] = None) -> None:
        """Report the tier a tracked request actually needed."""
        self.assessor.record_outcome(tracking_id, actual_tier, success, quality_score)

    def get_accuracy_metrics(self) -> Dict[str, Any]:
        return self.assessor.get_accuracy_metrics()

    def get_stats(self) -> Dict[str, Any]:
        """Get router statistics."""
        return {
            "models_registered": len(self.registry.models),
            "providers": self.registry.providers(),
            "default_provider": self.default_provider,
            "clients_configured": len(self.clients.client_ids()),
            "clients_with_usage": len(self.ledger.clients()),
            "experiments": self.experiments.experiment_ids(),
            "assessment_accuracy": self.assessor.get_accuracy_metrics(),
        }

"""
Tests for the adaptive router: the routing pipeline, budget admission,
experiments, provider precedence and execution through fallback chains.

Run with: pytest tests/test_adaptive.py -v
"""

from __future__ import annotations

import threading
from typing import List

import pytest

from tier_router import (
    AdaptiveRouter, ClientConfig, ConfigurationError, ExecuteRequest, ExecutionCancelled,
    ExecutionOutcome, ResolvedRequest, RouteRequest, Tier,
)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures and helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture()
def router() -> AdaptiveRouter:
    return AdaptiveRouter()


def _caption(client_id: str = "acme", **kwargs) -> RouteRequest:
    return RouteRequest(client_id=client_id, task_type="caption",
                        instructions="Write a caption for our launch", **kwargs)


def _strategy(client_id: str = "acme", **kwargs) -> RouteRequest:
    return RouteRequest(client_id=client_id, task_type="strategy", **kwargs)


class RecordingExecutor:
    """Executor object that fails the first *failures* attempts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: List[ResolvedRequest] = []

    def execute(self, request: ResolvedRequest) -> ExecutionOutcome:
        self.calls.append(request)
        if len(self.calls) <= self.failures:
            return ExecutionOutcome(success=False, error=f"provider {request.provider} down")
        return ExecutionOutcome(success=True, response=f"ok from {request.model}")


# ─────────────────────────────────────────────────────────────────────────────
# 1. Routing pipeline
# ─────────────────────────────────────────────────────────────────────────────

class TestRoute:

    def test_simple_task_routes_to_economy(self, router):
        result = router.route(_caption())
        assert result.success
        assert result.selected_tier == Tier.ECONOMY
        assert result.provider == "anthropic"
        assert result.model == "claude-haiku-3-5"
        assert len(result.request_id) == 32
        assert result.error is None

    def test_demanding_task_routes_higher(self, router):
        caption = router.route(_caption())
        strategy = router.route(_strategy(instructions="Analyze the trade-off and plan Q3"))
        assert strategy.selected_tier > caption.selected_tier

    def test_request_ids_unique(self, router):
        ids = {router.route(_caption()).request_id for _ in range(10)}
        assert len(ids) == 10

    def test_estimated_cost(self, router):
        result = router.route(_caption(context_tokens=1200, expected_output_tokens=300))
        expected = router.registry.estimate_cost(Tier.ECONOMY, "anthropic", 1200, 300)
        assert result.estimated_cost == pytest.approx(expected)

    def test_default_output_tokens(self, router):
        result = router.route(_caption())
        expected = router.registry.estimate_cost(Tier.ECONOMY, "anthropic", 0, 1000)
        assert result.estimated_cost == pytest.approx(expected)

    def test_route_does_not_charge(self, router):
        router.route(_caption())
        router.route(_strategy())
        assert router.get_usage_stats("acme").request_count == 0

    def test_tier_override(self, router):
        result = router.route(_caption(tier_override="premium"))
        assert result.selected_tier == Tier.PREMIUM
        assert result.override_applied
        assert result.complexity_score.recommended_tier == Tier.ECONOMY

    def test_unknown_tier_override_raises(self, router):
        with pytest.raises(ConfigurationError, match="gold"):
            router.route(_caption(tier_override="gold"))
        with pytest.raises(ConfigurationError):
            router.explain(_caption(tier_override="gold"))
        with pytest.raises(ConfigurationError):
            router.route_and_execute(ExecuteRequest("acme", "caption", tier_override="gold"),
                                     RecordingExecutor())

    def test_unknown_task_type_degrades(self, router):
        result = router.route(RouteRequest(client_id="acme", task_type="podcast_script"))
        assert result.success
        assert result.complexity_score.degraded

    def test_unknown_provider_raises(self, router):
        with pytest.raises(ConfigurationError):
            router.route(_caption(preferred_provider="mistral"))

    def test_latency_optimized_only_for_economy(self, router):
        assert router.route(_caption(latency_priority="high")).latency_optimized
        assert not router.route(_caption(latency_priority="normal")).latency_optimized
        assert not router.route(_caption(latency_priority="high",
                                         tier_override="premium")).latency_optimized

    def test_to_dict(self, router):
        data = router.route(_caption()).to_dict()
        assert data["selected_tier"] == "economy"
        assert data["model"] == "claude-haiku-3-5"
        assert data["model_config"]["fallback"]
        assert isinstance(data["reasoning"], list)


# ─────────────────────────────────────────────────────────────────────────────
# 2. Providers and client overrides
# ─────────────────────────────────────────────────────────────────────────────

class TestProviders:

    def test_client_default_provider(self, router):
        router.set_client_config("acme", ClientConfig(default_provider="openai"))
        assert router.route(_caption()).model == "gpt-4o-mini"

    def test_preferred_provider_wins(self, router):
        router.set_client_config("acme", ClientConfig(default_provider="openai"))
        assert router.route(_caption(preferred_provider="google")).provider == "google"

    def test_router_default_provider(self):
        router = AdaptiveRouter(default_provider="google")
        assert router.route(_caption()).provider == "google"

    def test_pinned_version_and_overrides(self, router):
        router.set_client_config("acme", {
            "default_provider": "openai",
            "pinned_versions": {"openai": "gpt-4o-mini-2024-07-18"},
            "tier_overrides": {"economy": {"max_tokens": 256}},
        })
        result = router.route(_caption())
        assert result.model == "gpt-4o-mini-2024-07-18"
        assert result.model_config.max_tokens == 256

    def test_allowed_providers_extend_fallbacks(self, router):
        router.set_client_config("acme", ClientConfig(allowed_providers=["anthropic", "google"]))
        chain = router.route(_caption()).model_config.fallback_chain
        assert "google" in [e.provider for e in chain]

    def test_clients_isolated(self, router):
        router.set_client_config("acme", ClientConfig(default_provider="openai"))
        assert router.route(_caption("globex")).provider == "anthropic"
        assert router.get_client_config("globex") == ClientConfig()


# ─────────────────────────────────────────────────────────────────────────────
# 3. Budget admission
# ─────────────────────────────────────────────────────────────────────────────

class TestBudget:

    def test_blocked_at_limit(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=5.00))
        router.record_usage("acme", 5.00, 1000)
        result = router.route(_caption())
        assert not result.success
        assert "budget" in result.error.lower()
        assert result.model_config is None
        assert result.provider is None

    def test_warning_downgrades_one_step(self, router):
        unconstrained = router.route(_strategy("globex"))
        assert unconstrained.selected_tier == Tier.STANDARD

        router.set_client_config("acme", ClientConfig(max_daily_cost=5.00))
        router.record_usage("acme", 4.50, 1000)
        result = router.route(_strategy("acme"))
        assert result.success
        assert result.budget_warning
        assert result.selected_tier == unconstrained.selected_tier.downgrade()
        assert result.selected_tier == Tier.ECONOMY

    def test_many_small_charges_reach_limit(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        for _ in range(10):
            router.record_usage("acme", 0.10, 10)
        assert router.get_usage_stats("acme").daily_cost == 1.0
        result = router.route(_caption())
        assert not result.success
        assert "Budget exhausted" in result.error

    def test_many_small_charges_reach_warning(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        for _ in range(9):
            router.record_usage("acme", 0.10, 10)
        result = router.route(_caption())
        assert result.success
        assert result.budget_warning

    def test_warning_downgrades_override(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=5.00))
        router.record_usage("acme", 4.60, 1000)
        result = router.route(_caption(tier_override="premium"))
        assert result.selected_tier == Tier.STANDARD

    def test_warning_floors_at_economy(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=5.00))
        router.record_usage("acme", 4.90, 1000)
        result = router.route(_caption())
        assert result.budget_warning
        assert result.selected_tier == Tier.ECONOMY

    def test_never_upgrades(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=100.0))
        router.record_usage("acme", 1.0, 10)
        for request in (_caption(), _strategy(), _caption(tier_override="standard")):
            free = router.route(RouteRequest(**{**request.__dict__, "client_id": "globex"}))
            limited = router.route(request)
            assert limited.selected_tier <= free.selected_tier

    def test_unlimited_never_blocks(self, router):
        router.record_usage("acme", 10_000.0, 10)
        result = router.route(_caption())
        assert result.success
        assert not result.budget_warning

    def test_monthly_limit(self, router):
        router.set_client_config("acme", ClientConfig(max_monthly_cost=10.0))
        router.record_usage("acme", 10.0, 10)
        result = router.route(_caption())
        assert not result.success
        assert "monthly" in result.error

    def test_reset_daily_usage_unblocks(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        router.record_usage("acme", 1.0, 10)
        assert not router.route(_caption()).success
        assert router.reset_daily_usage("acme") == 1
        assert router.route(_caption()).success

    def test_check_budget(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=2.0))
        router.record_usage("acme", 1.9, 10)
        assert router.check_budget("acme").status == "warning"
        assert router.check_budget("globex").status == "ok"


# ─────────────────────────────────────────────────────────────────────────────
# 4. Experiments
# ─────────────────────────────────────────────────────────────────────────────

class TestExperiments:

    def test_variant_is_sticky(self, router):
        router.enroll_in_experiment("exp", {"control": {}, "treatment": {"tier": "premium"}})
        variants = [router.route(_caption(experiment_id="exp")).experiment_variant
                    for _ in range(3)]
        assert variants[0] in ("control", "treatment")
        assert variants == [variants[0]] * 3

    def test_variant_tier_applies(self, router):
        router.enroll_in_experiment("exp", {"control": {"tier": "premium"},
                                            "treatment": {"tier": "premium"}})
        result = router.route(_caption(experiment_id="exp"))
        assert result.selected_tier == Tier.PREMIUM

    def test_variant_provider_applies_without_preference(self, router):
        router.enroll_in_experiment("exp", {"control": {"provider": "google"},
                                            "treatment": {"provider": "google"}})
        assert router.route(_caption(experiment_id="exp")).provider == "google"
        assert router.route(_caption(experiment_id="exp",
                                     preferred_provider="openai")).provider == "openai"

    def test_unenrolled_experiment_assigns_without_override(self, router):
        result = router.route(_caption(experiment_id="later"))
        assert result.experiment_variant in ("control", "treatment")
        assert result.selected_tier == Tier.ECONOMY

    def test_outcomes_attributed(self, router):
        router.enroll_in_experiment("exp", {"control": {}, "treatment": {}})
        result = router.route(_caption(experiment_id="exp"))
        assert router.record_experiment_outcome(result.request_id,
                                                {"success": True, "quality_score": 0.9})
        stats = router.get_experiment_stats("exp")
        assert stats["enrolled_clients"] == 1
        assert stats["variants"][result.experiment_variant]["outcomes"] == 1

    def test_blocked_requests_not_counted(self, router):
        router.enroll_in_experiment("exp", {"control": {}, "treatment": {}})
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        router.record_usage("acme", 1.0, 10)
        blocked = router.route(_caption(experiment_id="exp"))
        assert not blocked.success
        assert blocked.experiment_variant in ("control", "treatment")
        assert not router.record_experiment_outcome(blocked.request_id, {"success": False})

        stats = router.get_experiment_stats("exp")
        assert stats["enrolled_clients"] == 1
        assert sum(v["requests"] for v in stats["variants"].values()) == 0
        assert stats["outcome_count"] == 0

        router.route(_caption("globex", experiment_id="exp"))
        stats = router.get_experiment_stats("exp")
        assert sum(v["requests"] for v in stats["variants"].values()) == 1

    def test_concurrent_routes_agree(self, router):
        router.enroll_in_experiment("exp", {"control": {}, "treatment": {}})
        variants = []
        lock = threading.Lock()

        def worker():
            variant = router.route(_caption(experiment_id="exp")).experiment_variant
            with lock:
                variants.append(variant)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(variants) == 8
        assert len(set(variants)) == 1


# ─────────────────────────────────────────────────────────────────────────────
# 5. Execution and fallback
# ─────────────────────────────────────────────────────────────────────────────

class TestRouteAndExecute:

    def test_success_on_primary(self, router):
        executor = RecordingExecutor()
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        assert result.success
        assert not result.fallback_used
        assert result.response == "ok from claude-haiku-3-5"
        assert len(executor.calls) == 1

    def test_fail_once_then_succeed(self, router):
        executor = RecordingExecutor(failures=1)
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        assert result.success
        assert result.fallback_used
        assert len(executor.calls) == 2
        assert [c.attempt for c in executor.calls] == [0, 1]
        assert executor.calls[1].model == result.model_config.fallback_chain[0].model
        assert [a.success for a in result.attempts] == [False, True]

    def test_always_fail_exhausts_chain(self, router):
        calls = []

        def failing(request):
            calls.append(request)
            return ExecutionOutcome(success=False, error="503")

        request = ExecuteRequest("acme", "strategy")
        chain = router.route(request).model_config.fallback_chain
        result = router.route_and_execute(request, failing)
        assert not result.success
        assert "exhausted" in result.error
        assert result.error.startswith("fallback chain exhausted")
        assert "503" in result.error
        assert len(calls) == len(chain) + 1
        assert len(result.attempts) == len(chain) + 1

    def test_attempts_follow_chain_order(self, router):
        router.set_client_config("acme", ClientConfig(allowed_providers=["google"]))
        executor = RecordingExecutor(failures=10)
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        expected = [result.model_config.entry] + result.model_config.fallback_chain
        assert [(c.tier, c.provider, c.model) for c in executor.calls] == [
            (e.tier, e.provider, e.model) for e in expected]

    def test_raising_executor_advances(self, router):
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise RuntimeError("connection reset")
            return ExecutionOutcome(success=True, response="done")

        result = router.route_and_execute(ExecuteRequest("acme", "caption"), flaky)
        assert result.success
        assert result.fallback_used
        assert "connection reset" in result.attempts[0].error

    def test_cancelled_attempt_advances(self, router):
        event = threading.Event()
        event.set()
        calls = []

        def cancellable(request):
            calls.append(request)
            if request.cancelled:
                request.cancel_event.clear()
                raise ExecutionCancelled("cancelled by caller")
            return ExecutionOutcome(success=True, response="second try")

        result = router.route_and_execute(
            ExecuteRequest("acme", "caption", cancel_event=event), cancellable)
        assert result.success
        assert result.response == "second try"
        assert len(calls) == 2
        assert calls[0].cancel_event is event

    def test_plain_return_value_is_success(self, router):
        result = router.route_and_execute(ExecuteRequest("acme", "caption"),
                                          lambda request: {"text": "hi"})
        assert result.success
        assert result.response == {"text": "hi"}

    def test_none_return_is_failure(self, router):
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), lambda request: None)
        assert not result.success

    def test_resolved_request_contents(self, router):
        executor = RecordingExecutor()
        router.route_and_execute(ExecuteRequest(
            "acme", "caption", context_tokens=800, instructions="Be brief",
            payload={"messages": [{"role": "user", "content": "hi"}]},
        ), executor)
        call = executor.calls[0]
        assert call.client_id == "acme"
        assert call.instructions == "Be brief"
        assert call.context_tokens == 800
        assert call.max_tokens > 0
        assert call.payload["messages"][0]["content"] == "hi"

    def test_fallback_attempts_use_client_overrides(self, router):
        router.set_client_config("acme", {
            "tier_overrides": {"premium": {"max_tokens": 1000, "temperature": 0.2}},
        })
        executor = RecordingExecutor(failures=2)
        result = router.route_and_execute(
            ExecuteRequest("acme", "caption", tier_override="premium"), executor)
        assert result.success
        primary, same_tier, lower_tier = executor.calls
        assert (primary.tier, primary.max_tokens) == (Tier.PREMIUM, 1000)
        assert (same_tier.tier, same_tier.provider) == (Tier.PREMIUM, "openai")
        assert same_tier.max_tokens == 1000
        assert same_tier.temperature == 0.2
        assert lower_tier.tier == Tier.STANDARD
        assert lower_tier.max_tokens == router.registry.get(Tier.STANDARD, "anthropic").max_tokens

    def test_default_executor(self):
        executor = RecordingExecutor()
        router = AdaptiveRouter(executor=executor)
        assert router.route_and_execute(ExecuteRequest("acme", "caption")).success
        assert len(executor.calls) == 1

    def test_no_executor(self, router):
        with pytest.raises(ValueError):
            router.route_and_execute(ExecuteRequest("acme", "caption"))

    def test_budget_block_skips_executor(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        router.record_usage("acme", 1.0, 10)
        executor = RecordingExecutor()
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        assert not result.success
        assert executor.calls == []


class TestCharging:

    def test_success_charged_once_with_reported_usage(self, router):
        def executor(request):
            return ExecutionOutcome(success=True, response="x", input_tokens=120,
                                    output_tokens=80, cost=0.0123)

        router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        stats = router.get_usage_stats("acme")
        assert stats.request_count == 1
        assert stats.total_tokens == 200
        assert stats.total_cost == pytest.approx(0.0123)
        assert stats.by_provider["anthropic"]["count"] == 1

    def test_estimate_charged_on_serving_provider(self, router):
        executor = RecordingExecutor(failures=1)
        result = router.route_and_execute(ExecuteRequest("acme", "caption"), executor)
        served = result.model_config.fallback_chain[0]
        stats = router.get_usage_stats("acme")
        assert stats.request_count == 1
        assert stats.total_tokens == 1000
        assert stats.total_cost == pytest.approx(
            router.registry.estimate_cost(served.tier, served.provider, 0, 1000))
        assert served.provider in stats.by_provider

    def test_failures_not_charged(self, router):
        router.route_and_execute(ExecuteRequest("acme", "caption"),
                                 lambda request: ExecutionOutcome(success=False))
        assert router.get_usage_stats("acme").request_count == 0

    def test_charging_disabled(self):
        router = AdaptiveRouter(record_usage_on_success=False)
        router.route_and_execute(ExecuteRequest("acme", "caption"), RecordingExecutor())
        assert router.get_usage_stats("acme").request_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# 6. Reporting surface
# ─────────────────────────────────────────────────────────────────────────────

class TestReporting:

    def test_explain_is_read_only(self, router):
        router.enroll_in_experiment("exp", {"control": {}, "treatment": {}})
        text = router.explain(_caption(experiment_id="exp"))
        assert "claude-haiku-3-5" in text
        assert "no variant assigned" in text
        assert router.experiments.peek_variant("acme", "exp") is None

    def test_explain_blocked(self, router):
        router.set_client_config("acme", ClientConfig(max_daily_cost=1.0))
        router.record_usage("acme", 2.0, 10)
        assert "Blocked" in router.explain(_caption())

    def test_usage_history(self, router):
        router.record_usage("acme", 0.5, 10)
        router.record_usage("acme", 0.25, 10)
        history = router.get_usage_history("acme", 7)
        assert len(history) == 1
        assert history[0].cost == pytest.approx(0.75)

    def test_assessment_accuracy(self, router):
        result = router.route(_caption(tracking_id="t-1"))
        router.record_assessment_outcome("t-1", result.complexity_score.recommended_tier, True)
        metrics = router.get_accuracy_metrics()
        assert metrics["total"] == 1
        assert metrics["accuracy"] == 1.0

    def test_get_stats(self, router):
        router.set_client_config("acme", ClientConfig())
        router.enroll_in_experiment("exp", {})
        stats = router.get_stats()
        assert stats["models_registered"] == 9
        assert stats["clients_configured"] == 1
        assert stats["experiments"] == ["exp"]

    def test_invalid_warning_ratio(self):
        with pytest.raises(ValueError):
            AdaptiveRouter(warning_ratio=0.0)

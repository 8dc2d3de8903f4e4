"""
Tier Router: per-client model tier routing with budgets and fallbacks.

Scores each task's complexity, picks a cost tier (economy, standard,
premium), applies per-client overrides, A/B experiments and budget limits,
resolves a concrete provider and model, and executes through a fallback
chain. Zero required dependencies; the MCP server needs ``mcp``.

Usage:
    from tier_router import AdaptiveRouter, ClientConfig, RouteRequest

    router = AdaptiveRouter()
    router.set_client_config("acme", ClientConfig(
        default_provider="openai",
        max_daily_cost=5.00,
    ))

    result = router.route(RouteRequest(
        client_id="acme",
        task_type="strategy",
        context_tokens=4000,
        instructions="Analyze Q3 performance and plan next steps",
    ))
    print(f"Use {result.provider}/{result.model} ({result.selected_tier.value})")

    # Record what the request actually cost
    router.record_usage("acme", cost=0.042, tokens=5200,
                        tier=result.selected_tier, provider=result.provider)

Execution with fallbacks:
    from tier_router import ExecuteRequest, ExecutionOutcome

    def call_llm(resolved):
        text = my_client.complete(resolved.model, resolved.instructions)
        return ExecutionOutcome(success=True, response=text)

    result = router.route_and_execute(
        ExecuteRequest(client_id="acme", task_type="caption"), call_llm)
"""

__version__ = "1.0.0"

from .adaptive import (
    AdaptiveRouter,
    AttemptRecord,
    ExecuteRequest,
    ExecutionOutcome,
    Executor,
    ResolvedRequest,
    RouteRequest,
    RouteResult,
)
from .assessor import ComplexityAssessor, ComplexityFactors, ComplexityScore
from .budget import BudgetStatus, check_budget
from .config import ClientConfig, ClientConfigStore, Config
from .errors import (
    BudgetExhausted,
    ConfigurationError,
    ExecutionCancelled,
    ExecutionFailure,
    FallbackExhausted,
    RouterError,
)
from .experiments import ExperimentConfig, ExperimentOutcome, ExperimentRegistry, VariantOverride
from .ledger import InMemoryUsageStore, UsageBucket, UsageLedger, UsageRecord, UsageStats
from .registry import FallbackEntry, ModelConfig, TierRegistry
from .tiers import TIER_ORDER, TaskType, Tier, UnknownTaskType, parse_task_type

__all__ = [
    # Routing
    "AdaptiveRouter",
    "RouteRequest",
    "RouteResult",
    "ExecuteRequest",
    "ResolvedRequest",
    "ExecutionOutcome",
    "Executor",
    "AttemptRecord",

    # Tiers and tasks
    "Tier",
    "TIER_ORDER",
    "TaskType",
    "UnknownTaskType",
    "parse_task_type",

    # Assessment
    "ComplexityAssessor",
    "ComplexityFactors",
    "ComplexityScore",

    # Catalog and clients
    "TierRegistry",
    "ModelConfig",
    "FallbackEntry",
    "Config",
    "ClientConfig",
    "ClientConfigStore",

    # Usage and budgets
    "UsageLedger",
    "UsageRecord",
    "UsageStats",
    "UsageBucket",
    "InMemoryUsageStore",
    "BudgetStatus",
    "check_budget",

    # Experiments
    "ExperimentRegistry",
    "ExperimentConfig",
    "ExperimentOutcome",
    "VariantOverride",

    # Errors
    "RouterError",
    "ConfigurationError",
    "BudgetExhausted",
    "ExecutionFailure",
    "ExecutionCancelled",
    "FallbackExhausted",
]

"""
Tier Router MCP Server

Exposes tier-router as MCP tools for any MCP-enabled agent.

Tools:
  - route(client_id, task_type, ...)   → tier/provider/model decision
  - explain(client_id, task_type, ...) → human-readable routing explanation
  - record_usage(client_id, cost, ...) → charge a client's ledger
  - get_usage_stats(client_id)         → spend and token aggregates
  - get_experiment_stats(experiment_id) → A/B enrollment and outcomes

Usage:
    python -m tier_router.mcp_server --config ./config
    # or
    from tier_router.mcp_server import create_server
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, Optional

# ---------------------------------------------------------------------------
# Graceful MCP availability check
# ---------------------------------------------------------------------------
try:
    from mcp.server.fastmcp import FastMCP
    MCP_AVAILABLE = True
except ImportError:
    MCP_AVAILABLE = False
    FastMCP = None  # type: ignore

from tier_router.adaptive import AdaptiveRouter, RouteRequest
from tier_router.errors import RouterError

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_router(config_path: Optional[str] = None) -> AdaptiveRouter:
    """Create the router shared by every tool of one server."""
    return AdaptiveRouter(config_path)


def _request(client_id: str, task_type: str, context_tokens: int, instructions: str,
             preferred_provider: Optional[str], tier_override: Optional[str],
             experiment_id: Optional[str]) -> RouteRequest:
    return RouteRequest(
        client_id=client_id,
        task_type=task_type,
        context_tokens=context_tokens,
        instructions=instructions,
        preferred_provider=preferred_provider,
        tier_override=tier_override,
        experiment_id=experiment_id,
    )


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------

def create_server(router: Optional[AdaptiveRouter] = None,
                  config_path: Optional[str] = None) -> "FastMCP":
    """Create and return the FastMCP server with tier-router tools.

    Args:
        router: Router to expose. Built from *config_path* when omitted.
        config_path: Directory holding ``config.json``.

    Returns:
        A configured ``FastMCP`` instance ready to run.

    Raises:
        ImportError: If the ``mcp`` package is not installed.
    """
    if not MCP_AVAILABLE:
        raise ImportError(
            "The 'mcp' package is required to run the tier-router MCP server. "
            "Install it with: pip install mcp"
        )

    router = router if router is not None else _get_router(config_path)

    mcp = FastMCP(
        name="tier-router",
        instructions=(
            "Tier Router: per-client model tier routing with budgets. "
            "Use route() to pick a tier, provider and model, explain() for the "
            "reasoning, record_usage() after running a request, and "
            "get_usage_stats() / get_experiment_stats() for reporting."
        ),
    )

    # ------------------------------------------------------------------
    # Tool: route
    # ------------------------------------------------------------------
    @mcp.tool()
    def route(
        client_id: str,
        task_type: str,
        context_tokens: int = 0,
        instructions: str = "",
        preferred_provider: Optional[str] = None,
        tier_override: Optional[str] = None,
        experiment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Route a task to a tier, provider and model for one client.

        Args:
            client_id: Client the request is for.
            task_type: Task category (e.g. ``"caption"``, ``"strategy"``).
            context_tokens: Input context size in tokens.
            instructions: Free-text task instructions.
            preferred_provider: Provider to use instead of the client default.
            tier_override: ``"economy"``, ``"standard"`` or ``"premium"``.
            experiment_id: A/B experiment to route under.

        Returns:
            Dict with keys: success, error, request_id, selected_tier,
            provider, model, estimated_cost, budget_warning, reasoning, ...
        """
        try:
            result = router.route(_request(client_id, task_type, context_tokens, instructions,
                                           preferred_provider, tier_override, experiment_id))
        except (RouterError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return result.to_dict()

    # ------------------------------------------------------------------
    # Tool: explain
    # ------------------------------------------------------------------
    @mcp.tool()
    def explain(
        client_id: str,
        task_type: str,
        context_tokens: int = 0,
        instructions: str = "",
        preferred_provider: Optional[str] = None,
        tier_override: Optional[str] = None,
        experiment_id: Optional[str] = None,
    ) -> str:
        """Explain how a task would be routed, without routing it.

        Returns:
            Multi-line explanation covering assessment, overrides, budget,
            the resolved model and its fallbacks.
        """
        try:
            return router.explain(_request(client_id, task_type, context_tokens, instructions,
                                           preferred_provider, tier_override, experiment_id))
        except (RouterError, ValueError) as exc:
            return f"Cannot route: {exc}"

    # ------------------------------------------------------------------
    # Tool: record_usage
    # ------------------------------------------------------------------
    @mcp.tool()
    def record_usage(
        client_id: str,
        cost: float,
        tokens: int = 0,
        tier: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Charge a client's usage ledger.

        Args:
            client_id: Client to charge.
            cost: Dollar cost of the request.
            tokens: Tokens consumed.
            tier: Optional tier the request ran on.
            provider: Optional provider the request ran on.

        Returns:
            Dict with keys: client_id, recorded (bool), and the record or an
            error.
        """
        try:
            record = router.record_usage(client_id, cost, tokens, tier, provider)
        except ValueError as exc:
            return {"client_id": client_id, "recorded": False, "error": str(exc)}
        return {"client_id": client_id, "recorded": True, "record": record.to_dict()}

    # ------------------------------------------------------------------
    # Tool: get_usage_stats
    # ------------------------------------------------------------------
    @mcp.tool()
    def get_usage_stats(client_id: str) -> Dict[str, Any]:
        """Return spend and token aggregates for a client."""
        stats = router.get_usage_stats(client_id).to_dict()
        stats["client_id"] = client_id
        stats["budget"] = router.check_budget(client_id).to_dict()
        return stats

    # ------------------------------------------------------------------
    # Tool: get_experiment_stats
    # ------------------------------------------------------------------
    @mcp.tool()
    def get_experiment_stats(experiment_id: str) -> Dict[str, Any]:
        """Return enrollment and outcome statistics for an experiment."""
        return router.get_experiment_stats(experiment_id)

    return mcp


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the tier-router MCP server (stdio transport by default)."""
    parser = argparse.ArgumentParser(
        description="Tier Router MCP Server: expose tier routing over MCP."
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse"],
        default="stdio",
        help="MCP transport (default: stdio).",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host for SSE transport (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8766,
        help="Port for SSE transport (default: 8766).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Directory containing config.json (default: packaged defaults).",
    )
    args = parser.parse_args()

    if not MCP_AVAILABLE:
        print(
            "ERROR: The 'mcp' package is not installed.\n"
            "Install it with: pip install mcp",
            file=sys.stderr,
        )
        sys.exit(1)

    server = create_server(config_path=args.config)
    _log.info("Starting tier-router MCP server (%s)", args.transport)

    if args.transport == "stdio":
        server.run(transport="stdio")
    else:
        server.settings.host = args.host
        server.settings.port = args.port
        server.run(transport="sse")


if __name__ == "__main__":
    main()

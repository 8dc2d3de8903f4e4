#!/usr/bin/env python3
"""
Tier Router Quickstart Example

Demonstrates tier routing, client budgets, experiments and execution
through fallback chains with a fake executor.
"""

import random

from tier_router import (
    AdaptiveRouter, ClientConfig, ExecuteRequest, ExecutionOutcome, RouteRequest,
)


def fake_llm(request):
    """Pretend to call a provider; google is 'down' for this demo."""
    if request.provider == "google":
        return ExecutionOutcome(success=False, error="google: 503 Service Unavailable")
    output_tokens = random.randint(100, 400)
    return ExecutionOutcome(
        success=True,
        response=f"[{request.model}] response to {request.instructions[:30]!r}",
        input_tokens=request.context_tokens,
        output_tokens=output_tokens,
    )


def main():
    """Run quickstart demonstration."""
    print("=== Tier Router Quickstart ===\n")

    # Initialize router
    print("1. Initializing router...")
    router = AdaptiveRouter(executor=fake_llm)
    stats = router.get_stats()
    print(f"   Loaded {stats['models_registered']} model configs")
    print(f"   Providers: {', '.join(stats['providers'])}")
    print()

    # Configure two clients
    router.set_client_config("acme", ClientConfig(
        default_provider="openai",
        max_daily_cost=0.05,
    ))
    router.set_client_config("globex", ClientConfig(
        default_provider="google",
        allowed_providers=["google", "anthropic"],
    ))

    tasks = [
        ("hashtags", 150, "Suggest hashtags for a coffee shop opening"),
        ("caption", 400, "Write a catchy, playful caption for our summer sale"),
        ("summary", 18_000, "Summarize the attached quarterly report"),
        ("strategy", 6_000, "Analyze competitors, evaluate trade-offs and plan our Q3 launch"),
        ("podcast_script", 1_000, "Draft an intro for episode 12"),
    ]

    print("2. Routing tasks for 'acme'...")
    for task_type, tokens, instructions in tasks:
        result = router.route(RouteRequest(
            client_id="acme",
            task_type=task_type,
            context_tokens=tokens,
            instructions=instructions,
        ))
        score = result.complexity_score
        print(f"\n   {task_type} ({tokens:,} tokens)")
        print(f"   → Tier: {result.selected_tier.value} "
              f"(score {score.overall:.2f}, confidence {score.confidence:.2f})")
        print(f"   → Model: {result.model} ({result.provider})")
        print(f"   → Estimated cost: ${result.estimated_cost:.5f}")
        if score.degraded:
            print("   → Unknown task type, neutral baseline used")

    print("\n" + "=" * 60)

    # Execute with fallbacks
    print("\n3. Executing for 'globex' (google is down)...")
    result = router.route_and_execute(ExecuteRequest(
        client_id="globex",
        task_type="long_form",
        context_tokens=3_000,
        instructions="Write a blog post about sustainable packaging",
    ))
    for attempt in result.attempts:
        status = "ok" if attempt.success else f"failed ({attempt.error})"
        print(f"   Attempt {attempt.attempt}: {attempt.provider}/{attempt.model} → {status}")
    print(f"   Fallback used: {result.fallback_used}")
    print(f"   Response: {result.response}")

    # Budget admission
    print("\n4. Budget admission for 'acme' (daily limit $0.05)...")
    for i in range(6):
        result = router.route_and_execute(ExecuteRequest(
            client_id="acme",
            task_type="analysis",
            context_tokens=4_000,
            instructions="Analyze churn drivers",
        ))
        usage = router.get_usage_stats("acme")
        if not result.success:
            print(f"   Request {i + 1}: blocked ({result.error})")
            break
        flag = " [budget warning, downgraded]" if result.budget_warning else ""
        print(f"   Request {i + 1}: {result.selected_tier.value}/{result.model}{flag} "
              f"- spent today ${usage.daily_cost:.4f}")

    # Experiments
    print("\n5. A/B experiment: economy captions...")
    router.enroll_in_experiment("economy-captions", {
        "control": {},
        "treatment": {"tier": "economy", "provider": "anthropic"},
    })
    for client_id in ("c1", "c2", "c3", "c4"):
        result = router.route(RouteRequest(
            client_id=client_id,
            task_type="caption",
            instructions="Write a vivid caption for a mountain photo",
            experiment_id="economy-captions",
        ))
        router.record_experiment_outcome(result.request_id, {
            "success": True,
            "quality_score": random.uniform(0.6, 0.95),
        })
        print(f"   {client_id}: {result.experiment_variant} → {result.model}")
    exp = router.get_experiment_stats("economy-captions")
    for name, data in exp["variants"].items():
        print(f"   {name}: {data['clients']} client(s), avg quality {data['avg_quality']}")

    # Explanation
    print("\n6. Explanation:")
    explanation = router.explain(RouteRequest(
        client_id="globex",
        task_type="code",
        context_tokens=25_000,
        instructions="Optimize this query planner and prove the bound",
    ))
    for line in explanation.splitlines():
        print(f"   {line}")

    print("\n" + "=" * 60)
    print("Quickstart complete!")


if __name__ == "__main__":
    main()

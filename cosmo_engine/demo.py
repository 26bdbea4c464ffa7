"""
Demo script showing basic usage of the COSMO execution engine.
"""

from .models import (
    ActionMapping, ActionType, ChainStep, FunctionChain, Intent, Model, OnError, Preferences,
    Priority, RoutingConfig, StepType,
)
from .utils import setup_logging, get_logger, ConfigManager
from .core import CosmoEngine, InMemoryConfigStore


def build_demo_store() -> InMemoryConfigStore:
    """Configuration with a greeting function, a summarize chain and two models."""
    intents = [
        Intent(key="greeting", display_name="Greeting", category="conversation",
               keywords=("hello", "hi", "hey"), priority=60),
        Intent(key="summarize", display_name="Summarize", category="writing",
               keywords=("summarize", "summary", "tl;dr"), priority=80),
        Intent(key="conversation", display_name="Conversation", category="conversation",
               keywords=(), priority=10),
    ]
    mappings = [
        ActionMapping(intent_key="greeting", action_key="say_hello", action_type=ActionType.FUNCTION,
                      parameter_patterns={"name": r"(?:i am|i'm|my name is)\s+(\w+)"}),
        ActionMapping(intent_key="summarize", action_key="summarize_chain", action_type=ActionType.CHAIN),
        ActionMapping(intent_key="conversation", action_key="chat", action_type=ActionType.MODEL_CALL),
    ]
    chains = [
        FunctionChain(
            chain_key="summarize_chain",
            display_name="Summarize text",
            steps=(
                ChainStep(step_key="clean", function_key="strip_command", step_type=StepType.TRANSFORM),
                ChainStep(step_key="check", function_key="non_empty", step_type=StepType.VALIDATION),
                ChainStep(step_key="summary", function_key="summary", step_type=StepType.MODEL_CALL,
                          on_error=OnError.RETRY,
                          config={"prompt_template": "Summarize in one sentence: {input}"}),
            ),
            trigger_intents=("summarize",),
        ),
    ]
    models = [
        Model(model_id="openai/gpt-4o-mini", provider="openai", best_for="conversation",
              pricing_prompt=0.15, pricing_completion=0.6, is_default=True),
        Model(model_id="anthropic/claude-3.5-sonnet", provider="anthropic", best_for="writing",
              pricing_prompt=3.0, pricing_completion=15.0, quality_tier=3),
    ]
    routing = RoutingConfig(default_model_id="openai/gpt-4o-mini",
                            fallback_model_id="openai/gpt-4o-mini")
    return InMemoryConfigStore(intents, mappings, chains, models, routing)


def main():
    """Demonstrate basic engine functionality."""
    # Initialize configuration
    config_manager = ConfigManager()
    config = config_manager.load_config()

    # Setup logging
    setup_logging(config.logging_config)
    logger = get_logger(__name__)

    logger.info("COSMO Execution Engine Demo Starting")

    engine = CosmoEngine(build_demo_store(), config)
    engine.registry.register("say_hello", lambda data, cfg: f"Hello, {data['parameters'].get('name', 'there')}!")
    engine.registry.register("strip_command",
                             lambda data, cfg: {"input": data["input"].split(":", 1)[-1].strip()})
    engine.registry.register("non_empty", lambda data, cfg: bool(data["input"]))

    online = bool(config.upstream_config.api_key)
    requests = [
        ("Hello, my name is Ada", Preferences(priority=Priority.HIGH)),
        ("Summarize: the queue drains strictly by priority tier and FIFO within a tier.", Preferences()),
        ("What is the capital of France?", Preferences(max_cost_usd=0.01)),
    ]

    try:
        for i, (text, preferences) in enumerate(requests, 1):
            logger.info(f"Processing request {i}: {text[:50]}...")
            dry = engine.dry_run(text, preferences)
            plan = dry.plan
            print(f"\nRequest {i}: {text}")
            if plan is not None:
                print(f"Plan: {plan.intent_key} -> {plan.action_type.value} "
                      f"(model {plan.model_id}, est. ${plan.estimated_cost_usd:.6f})")

            if plan is not None and plan.model_id and not online:
                print("Skipped execution: set COSMO_API_KEY to call upstream models")
                continue

            response = engine.execute(text, preferences)
            print(f"Status: {response.status}")
            print(f"Result: {response.result if response.error is None else response.error}")
            if response.costs:
                print(f"Cost: ${response.costs.cost_usd:.6f}")
            print("-" * 50)

        stats = engine.get_statistics()
        print(f"\nRequests: {stats['total_requests']}, success rate {stats['success_rate']:.0f}%")
    finally:
        engine.shutdown()

    logger.info("Demo completed successfully")


if __name__ == "__main__":
    main()

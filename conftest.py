"""
Shared fixtures: a scripted model client and a small routing configuration.
"""

import re
import threading

import pytest

from cosmo_engine.core import CosmoEngine, FunctionRegistry, InMemoryConfigStore
from cosmo_engine.core.batching import COMBINED_PROMPT_HEADER
from cosmo_engine.models import (
    ActionMapping, ActionType, ChainStep, FunctionChain, Intent, Model, RoutingConfig, StepType,
    SystemConfig, UpstreamResponse,
)


class FakeModelClient:
    """Stands in for ModelClient; records calls and answers from a reply function."""

    def __init__(self, reply=None, failures=None, drop_answers=()):
        self.reply = reply or (lambda model_id, prompt: f"answer from {model_id}")
        self.failures = list(failures or [])
        self.drop_answers = set(drop_answers)
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, model_id, prompt, system_prompt=None, max_tokens=None,
                 temperature=None, rate_limit_rpm=None):
        with self._lock:
            self.calls.append((model_id, prompt))
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure

        if prompt.startswith(COMBINED_PROMPT_HEADER):
            questions = re.findall(r"^Q(\d+): (.*)$", prompt, re.MULTILINE)
            content = "\n".join(
                f"[ANSWER {number}]\n{self.reply(model_id, question)}\n[/ANSWER {number}]"
                for number, question in questions
                if int(number) not in self.drop_answers
            )
        else:
            content = self.reply(model_id, prompt)

        return UpstreamResponse(content=content, model_id=model_id, prompt_tokens=100,
                                completion_tokens=20, latency_ms=5.0)

    def stream(self, model_id, prompt, system_prompt=None, max_tokens=None,
               temperature=None, rate_limit_rpm=None):
        response = self.complete(model_id, prompt, system_prompt, max_tokens, temperature, rate_limit_rpm)
        for part in re.findall(r"\S+\s*", response.content):
            yield part


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
def models():
    return [
        Model(model_id="cheap", provider="openai", best_for="conversation",
              pricing_prompt=0.5, pricing_completion=1.5, quality_tier=1),
        Model(model_id="premium", provider="anthropic", best_for="coding",
              pricing_prompt=3.0, pricing_completion=15.0, quality_tier=3),
    ]


@pytest.fixture
def intents():
    return [
        Intent(key="code_review", display_name="Code review", category="coding",
               keywords=("review", "refactor"), priority=80),
        Intent(key="greeting", display_name="Greeting", category="conversation",
               keywords=("hello",), priority=60),
        Intent(key="summarize", display_name="Summarize", category="writing",
               keywords=("summarize",), priority=70),
        Intent(key="conversation", display_name="Conversation", category="conversation",
               keywords=("chat",), priority=10),
    ]


@pytest.fixture
def store(intents, models):
    mappings = [
        ActionMapping(intent_key="code_review", action_key="review_model",
                      action_type=ActionType.MODEL_CALL),
        ActionMapping(intent_key="greeting", action_key="say_hello", action_type=ActionType.FUNCTION,
                      parameter_patterns={"name": r"my name is (\w+)"}),
        ActionMapping(intent_key="summarize", action_key="summarize_chain", action_type=ActionType.CHAIN),
        ActionMapping(intent_key="conversation", action_key="chat", action_type=ActionType.MODEL_CALL),
    ]
    chains = [
        FunctionChain(
            chain_key="summarize_chain",
            display_name="Summarize",
            steps=(
                ChainStep(step_key="clean", function_key="clean", step_type=StepType.TRANSFORM),
                ChainStep(step_key="summary", function_key="summary", step_type=StepType.MODEL_CALL,
                          config={"prompt_template": "Summarize: {input}"}),
            ),
        ),
    ]
    routing = RoutingConfig(default_model_id="cheap", fallback_model_id="cheap")
    return InMemoryConfigStore(intents, mappings, chains, models, routing)


@pytest.fixture
def engine_config():
    config = SystemConfig()
    config.queue_config.worker_count = 2
    config.queue_config.poll_interval_seconds = 0.01
    config.queue_config.backoff_base_seconds = 0.01
    config.queue_config.backoff_max_seconds = 0.05
    config.queue_config.backoff_jitter = False
    config.executor_config.step_backoff_base_seconds = 0.001
    config.classifier_config.enable_model_classification = False
    config.batch_config.enabled = False
    config.default_timeout_seconds = 5.0
    return config


@pytest.fixture
def registry():
    registry = FunctionRegistry()
    registry.register("say_hello", lambda data, cfg: f"Hello, {data['parameters'].get('name', 'there')}!")
    registry.register("clean", lambda data, cfg: {"input": data["input"].replace("summarize", "").strip()})
    return registry


@pytest.fixture
def engine(store, engine_config, fake_client, registry):
    engine = CosmoEngine(store, engine_config, model_client=fake_client, registry=registry)
    yield engine
    engine.shutdown()

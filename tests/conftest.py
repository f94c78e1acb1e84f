"""Shared fixtures: fake clock, scripted async executors, request builders."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from ai_router.config import FallbackConfig, RouterConfig
from ai_router.model_registry import ModelCapabilities, ModelRegistry
from ai_router.schemas import (
    AIRequest,
    AIResponse,
    ContextAnalysis,
    InvocationParams,
    LanguageOptimization,
    RoutingDecision,
    TaskType,
    Urgency,
)

# Passes every task-specific response check (category token, list structure, numbers)
VALID_CONTENT = (
    "Type de document: CCTP\n"
    "- exigence 1: certification ISO 27001\n"
    "- exigence 2: qualification ANSSI, montant 1200 €"
)


class FakeClock:
    """Manually advanced wall clock"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedExecutor:
    """
    Async executor whose behavior is scripted per model.

    A behavior is either an exception instance (raised), the string "hang"
    (sleeps past any test timeout), an AIResponse (returned as a copy) or
    absent (a valid response is returned).
    """

    def __init__(self, behaviors: Optional[Dict[str, Any]] = None, **response_fields):
        self.behaviors = dict(behaviors or {})
        self.response_fields = response_fields
        self.calls: List[str] = []
        self.requests: List[AIRequest] = []

    async def __call__(self, model: str, request: AIRequest, params: InvocationParams) -> AIResponse:
        self.calls.append(model)
        self.requests.append(request)
        behavior = self.behaviors.get(model)
        if isinstance(behavior, BaseException):
            raise behavior
        if behavior == "hang":
            await asyncio.sleep(10)
        if isinstance(behavior, AIResponse):
            return AIResponse(**{**behavior.__dict__, "metadata": dict(behavior.metadata)})
        fields = {
            "content": VALID_CONTENT,
            "model": model,
            "processing_time_ms": 120.0,
            "cost": 0.002,
            "confidence": 0.9,
        }
        fields.update(self.response_fields)
        return AIResponse(**fields)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fallback_config() -> FallbackConfig:
    """Short timeout and no backoff so fallback tests run instantly."""
    return FallbackConfig(timeout_ms=200, backoff_base_ms=0, backoff_jitter_ms=0)


@pytest.fixture()
def router_config() -> RouterConfig:
    return RouterConfig().merged({
        "fallback": {"timeout_ms": 200, "backoff_base_ms": 0, "backoff_jitter_ms": 0},
    })


@pytest.fixture()
def registry() -> ModelRegistry:
    return ModelRegistry()


@pytest.fixture()
def make_context():
    def _make(
        task_type: TaskType = TaskType.ANALYZE,
        complexity: int = 3,
        tokens: int = 500,
        urgency: Urgency = Urgency.BALANCED,
        budget: float = 0.2,
        language: LanguageOptimization = LanguageOptimization.GENERAL,
    ) -> ContextAnalysis:
        return ContextAnalysis(
            complexity=complexity,
            content_size_tokens=tokens,
            task_type=task_type,
            urgency=urgency,
            cost_budget=budget,
            language_optimization=language,
        )
    return _make


@pytest.fixture()
def make_request(make_context):
    def _make(content: str = "Analyser les risques de cet appel d'offres", **context_fields) -> AIRequest:
        return AIRequest(content=content, context=make_context(**context_fields))
    return _make


@pytest.fixture()
def make_decision():
    def _make(selected: str = "model-a", chain=("model-b", "model-c")) -> RoutingDecision:
        return RoutingDecision(
            selected_model=selected,
            fallback_chain=tuple(chain),
            reasoning="test decision",
            estimated_cost=0.001,
            estimated_time_ms=1000,
            decision_confidence=0.8,
            invocation_params=InvocationParams(max_tokens=750, temperature=0.3),
        )
    return _make


@pytest.fixture()
def make_model():
    def _make(name: str, **fields) -> ModelCapabilities:
        defaults = dict(
            max_tokens=8000,
            avg_response_time_ms=2000,
            cost_per_token=0.00001,
            quality_score=0.9,
            specialized_accuracy=0.5,
            rate_limit_per_minute=200,
            current_load=0.2,
        )
        defaults.update(fields)
        return ModelCapabilities(name=name, **defaults)
    return _make

"""
Routing Engine for AI Model Selection

This module selects the best backend for an analyzed request by scoring every
eligible model on six weighted criteria (performance, cost, quality, speed,
availability, task fit), then builds the fallback chain and the invocation
parameters for the winner.
"""

import logging
import threading
from collections import deque
from typing import Dict, Any, List, Optional, Iterable
from dataclasses import dataclass
from datetime import datetime

from ai_router.config import RoutingConfig, CRITERIA
from ai_router.exceptions import NoEligibleModel
from ai_router.model_registry import ModelCapabilities, RegistrySnapshot
from ai_router.schemas import (
    ContextAnalysis,
    InvocationParams,
    LanguageOptimization,
    Priority,
    RoutingDecision,
    TaskType,
    UserPreferences,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SPECIALIZED_ACCURACY_THRESHOLD = 0.8
SPECIALIZED_BONUS = 0.2
OVERLOAD_THRESHOLD = 0.8
OVERLOAD_PENALTY = 0.1
HISTORY_SIZE = 1000

# (cost / budget ratio upper bound, score)
COST_TIERS = ((0.5, 1.0), (0.8, 0.8), (1.0, 0.6), (1.2, 0.3))
# (latency / target ratio upper bound, score)
SPEED_TIERS = ((0.5, 1.0), (1.0, 0.8), (1.5, 0.5))
SPEED_FLOOR = 0.2

TEMPERATURES = {
    TaskType.CLASSIFY: 0.1,
    TaskType.CALCULATE: 0.0,
    TaskType.GENERATE: 0.7,
}
DEFAULT_TEMPERATURE = 0.3


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class ModelScore:
    """Scoring outcome for one candidate"""
    capabilities: ModelCapabilities
    scores: Dict[str, float]
    total: float
    estimated_cost: float
    order: int


class RoutingEngine:
    """
    Multi-criteria routing engine

    `decide` is deterministic: the same context, preferences and registry
    snapshot always produce the same selection. Ties are broken by lower
    estimated cost, then by candidate order (preferred models first, then
    registry insertion order).
    """

    def __init__(self, config: Optional[RoutingConfig] = None):
        """
        Initialize the routing engine

        Args:
            config: Weight tables and latency targets
        """
        self.config = config or RoutingConfig()
        self.routing_history = deque(maxlen=HISTORY_SIZE)
        self._history_lock = threading.Lock()

    def decide(
        self,
        context: ContextAnalysis,
        snapshot: RegistrySnapshot,
        preferences: Optional[UserPreferences] = None,
        blocked_models: Iterable[str] = ()
    ) -> RoutingDecision:
        """
        Route an analyzed request to the best model

        Args:
            context: Analyzed request
            snapshot: Immutable registry view
            preferences: Optional caller preferences
            blocked_models: Models whose circuit is currently open

        Returns:
            RoutingDecision for the request

        Raises:
            NoEligibleModel: If no model passes the eligibility filter
        """
        blocked = frozenset(blocked_models)
        eligible_models = self._filter_eligible_models(context, snapshot, preferences, blocked)

        if not eligible_models:
            raise NoEligibleModel(
                context.task_type.value,
                f"{len(snapshot.models)} registered, {len(blocked)} blocked"
            )

        weights = self.calculate_weights(context, preferences)
        scored = [
            self._score_model(capabilities, context, preferences, weights, order)
            for order, capabilities in enumerate(eligible_models)
        ]
        best = min(scored, key=lambda s: (-round(s.total, 9), s.estimated_cost, s.order))

        eligible_names = [m.name for m in eligible_models]
        decision = RoutingDecision(
            selected_model=best.capabilities.name,
            fallback_chain=tuple(
                self._get_fallback_models(best.capabilities.name, eligible_names, snapshot)
            ),
            reasoning=self._generate_reasoning(best, context),
            estimated_cost=round(best.estimated_cost, 6),
            estimated_time_ms=self._estimate_time(best.capabilities, context),
            decision_confidence=self._calculate_confidence(best.scores, context),
            invocation_params=self.generate_params(best.capabilities, context),
            scores=dict(best.scores),
            weights=dict(weights),
            registry_version=snapshot.version
        )

        self._record_routing(context, decision)
        return decision

    # ================== Eligibility ==================

    def _filter_eligible_models(
        self,
        context: ContextAnalysis,
        snapshot: RegistrySnapshot,
        preferences: Optional[UserPreferences],
        blocked: frozenset
    ) -> List[ModelCapabilities]:
        """
        Filter models based on request requirements

        Returns:
            Eligible ModelCapabilities, preferred models first
        """
        excluded = set(preferences.excluded_models) if preferences else set()
        eligible = []

        for model_name, capabilities in snapshot.models.items():
            if model_name in excluded:
                continue
            if model_name in blocked:
                logger.debug(f"Skipping model with open circuit: {model_name}")
                continue
            if not capabilities.is_available:
                continue
            if capabilities.max_tokens < context.content_size_tokens:
                continue
            if (context.language_optimization == LanguageOptimization.SPECIALIZED
                    and not capabilities.supports_specialized_language):
                continue
            if not capabilities.supports_task(context.task_type):
                continue
            eligible.append(capabilities)

        if preferences and preferences.preferred_models:
            rank = {name: i for i, name in enumerate(preferences.preferred_models)}
            preferred = sorted(
                (m for m in eligible if m.name in rank), key=lambda m: rank[m.name]
            )
            others = [m for m in eligible if m.name not in rank]
            eligible = preferred + others

        return eligible

    # ================== Scoring ==================

    def _score_model(
        self,
        capabilities: ModelCapabilities,
        context: ContextAnalysis,
        preferences: Optional[UserPreferences],
        weights: Dict[str, float],
        order: int
    ) -> ModelScore:
        scores = {
            "performance": self.score_performance(capabilities, context),
            "cost": self.score_cost(capabilities, context),
            "quality": self.score_quality(capabilities, context),
            "speed": self.score_speed(capabilities, context, preferences),
            "availability": self.score_availability(capabilities),
            "task_fit": self.score_task_fit(capabilities, context),
        }
        total = sum(scores[c] * weights[c] for c in CRITERIA)
        return ModelScore(
            capabilities=capabilities,
            scores=scores,
            total=total,
            estimated_cost=self._estimate_cost(capabilities, context),
            order=order
        )

    def score_performance(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> float:
        score = capabilities.quality_score
        if (context.language_optimization == LanguageOptimization.SPECIALIZED
                and capabilities.specialized_accuracy > SPECIALIZED_ACCURACY_THRESHOLD):
            score += SPECIALIZED_BONUS
        if capabilities.current_load > OVERLOAD_THRESHOLD:
            score -= OVERLOAD_PENALTY
        return _clamp(score)

    def score_cost(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> float:
        estimated_cost = self._estimate_cost(capabilities, context)
        if context.cost_budget <= 0:
            ratio = 0.0 if estimated_cost == 0 else float("inf")
        else:
            ratio = estimated_cost / context.cost_budget
        for upper_bound, score in COST_TIERS:
            if ratio <= upper_bound:
                return score
        return 0.0

    def score_quality(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> float:
        score = capabilities.quality_score
        if context.complexity >= 8 and capabilities.max_tokens < 4000:
            score -= 0.2
        if context.task_type == TaskType.EXTRACT and capabilities.supports_structured_output:
            score += 0.1
        return _clamp(score)

    def score_speed(
        self,
        capabilities: ModelCapabilities,
        context: ContextAnalysis,
        preferences: Optional[UserPreferences] = None
    ) -> float:
        target = self.config.target_latency_ms[context.urgency]
        if preferences and preferences.max_response_time_ms:
            target = preferences.max_response_time_ms
        ratio = capabilities.avg_response_time_ms / target
        for upper_bound, score in SPEED_TIERS:
            if ratio <= upper_bound:
                return score
        return SPEED_FLOOR

    def score_availability(self, capabilities: ModelCapabilities) -> float:
        if not capabilities.is_available:
            return 0.0
        load_score = 1 - capabilities.current_load
        rate_limit_score = 1.0 if capabilities.rate_limit_per_minute > 100 else 0.5
        return _clamp(load_score * 0.7 + rate_limit_score * 0.3)

    def score_task_fit(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> float:
        is_optimal = context.task_type in capabilities.optimal_for
        score = 1.0 if is_optimal else 0.5

        if context.task_type == TaskType.EMBED:
            score = 1.0 if is_optimal else 0.3
        elif context.task_type == TaskType.CALCULATE:
            score = 1.0 if is_optimal else 0.6
        elif context.task_type == TaskType.EXTRACT and capabilities.supports_structured_output:
            score += 0.2

        return _clamp(score)

    def calculate_weights(
        self,
        context: ContextAnalysis,
        preferences: Optional[UserPreferences] = None
    ) -> Dict[str, float]:
        """Urgency base weights, scaled by the caller priority and normalized to 1"""
        weights = dict(self.config.urgency_weights[context.urgency])
        priority = preferences.priority if preferences else Priority.BALANCED
        for criterion, multiplier in self.config.priority_multipliers.get(priority, {}).items():
            weights[criterion] *= multiplier

        total = sum(weights.values())
        return {criterion: weights[criterion] / total for criterion in CRITERIA}

    # ================== Decision details ==================

    def _get_fallback_models(
        self,
        selected_model: str,
        eligible_names: List[str],
        snapshot: RegistrySnapshot
    ) -> List[str]:
        """Similar-capability models that are still eligible, capped at the configured size"""
        eligible = set(eligible_names)
        fallbacks = []
        for name in snapshot.fallback_adjacency.get(selected_model, ()):
            if name == selected_model or name not in eligible or name in fallbacks:
                continue
            fallbacks.append(name)
        return fallbacks[:self.config.max_fallbacks]

    def generate_params(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> InvocationParams:
        max_tokens = int(min(
            self.config.max_output_tokens,
            max(self.config.min_output_tokens, context.content_size_tokens * 1.5)
        ))
        if capabilities.max_output_tokens:
            max_tokens = min(max_tokens, capabilities.max_output_tokens)

        return InvocationParams(
            max_tokens=max_tokens,
            temperature=TEMPERATURES.get(context.task_type, DEFAULT_TEMPERATURE),
            system_prompt=self.build_system_prompt(context),
        )

    def build_system_prompt(self, context: ContextAnalysis) -> str:
        """
        System instructions for the backend, adapted to the analyzed request

        Args:
            context: Analyzed request

        Returns:
            Base prompt, followed by the task clause and, when they apply, the
            rigor clause (high complexity) and the terminology clause
            (specialized language)
        """
        parts = [self.config.system_prompt_base]
        task_prompt = self.config.task_system_prompts.get(context.task_type)
        if task_prompt:
            parts.append(task_prompt)
        if context.complexity >= self.config.rigor_complexity:
            parts.append(self.config.rigor_prompt)
        if context.language_optimization == LanguageOptimization.SPECIALIZED:
            parts.append(self.config.specialized_prompt)
        return " ".join(p for p in parts if p)

    def _estimate_cost(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> float:
        return capabilities.cost_per_token * context.content_size_tokens

    def _estimate_time(self, capabilities: ModelCapabilities, context: ContextAnalysis) -> int:
        complexity_multiplier = 1 + (context.complexity - 5) * 0.1
        return int(round(capabilities.avg_response_time_ms * complexity_multiplier))

    def _calculate_confidence(self, scores: Dict[str, float], context: ContextAnalysis) -> float:
        confidence = sum(scores.values()) / len(scores)
        if context.complexity >= 9:
            confidence *= 0.9
        if context.content_size_tokens > 8000:
            confidence *= 0.95
        return round(_clamp(confidence), 2)

    def _generate_reasoning(self, best: ModelScore, context: ContextAnalysis) -> str:
        strong_points = [c for c in CRITERIA if best.scores[c] > 0.7]
        weak_points = [c for c in CRITERIA if best.scores[c] < 0.4]

        reasoning = f"{best.capabilities.name} selected for {context.task_type.value.lower()}"
        if strong_points:
            reasoning += f" - strengths: {', '.join(strong_points)}"
        if weak_points:
            reasoning += f" - weaknesses: {', '.join(weak_points)}"
        reasoning += f" - urgency {context.urgency.value}"
        if context.language_optimization == LanguageOptimization.SPECIALIZED:
            reasoning += " - specialized language"
        return reasoning

    def _record_routing(self, context: ContextAnalysis, decision: RoutingDecision):
        """Record routing decision for analytics"""
        with self._history_lock:
            self.routing_history.append({
                "timestamp": datetime.now(),
                "task_type": context.task_type.value,
                "urgency": context.urgency.value,
                "selected_model": decision.selected_model,
                "confidence": decision.decision_confidence,
                "estimated_cost": decision.estimated_cost,
                "estimated_time_ms": decision.estimated_time_ms,
            })

    # ================== Analytics ==================

    def get_routing_stats(self) -> Dict[str, Any]:
        """Get statistics about routing decisions"""
        with self._history_lock:
            history = list(self.routing_history)
        if not history:
            return {}

        total_requests = len(history)
        model_usage: Dict[str, int] = {}
        task_usage: Dict[str, int] = {}
        total_estimated_cost = 0.0

        for entry in history:
            model = entry["selected_model"]
            model_usage[model] = model_usage.get(model, 0) + 1
            task = entry["task_type"]
            task_usage[task] = task_usage.get(task, 0) + 1
            total_estimated_cost += entry.get("estimated_cost", 0.0)

        return {
            "total_requests": total_requests,
            "model_usage": model_usage,
            "task_usage": task_usage,
            "total_estimated_cost": total_estimated_cost,
            "avg_cost_per_request": total_estimated_cost / total_requests,
            "avg_confidence": sum(e["confidence"] for e in history) / total_requests,
            "unique_models_used": len(model_usage),
        }

    def get_model_usage_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-model share of routing decisions"""
        with self._history_lock:
            history = list(self.routing_history)
        total = len(history)
        counts: Dict[str, int] = {}
        for entry in history:
            counts[entry["selected_model"]] = counts.get(entry["selected_model"], 0) + 1
        return {
            model: {
                "request_count": count,
                "usage_percentage": (count / total * 100) if total else 0.0,
            }
            for model, count in counts.items()
        }

    def reset_history(self):
        with self._history_lock:
            self.routing_history.clear()


__all__ = ["RoutingEngine", "ModelScore"]

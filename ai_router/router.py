"""
AI Router

Explicitly constructed service that ties the pipeline together:
analyze -> (cache) -> decide -> budget check -> execute with fallback ->
enrich -> record. One instance owns its registry, circuit state, metrics and
decision cache; nothing is kept at module level.
"""

import asyncio
import logging
import time
from typing import Dict, Any, Optional, Union, Callable, Tuple

from ai_router.config import RouterConfig
from ai_router.context_analyzer import ContextAnalyzer
from ai_router.decision_cache import DecisionCache
from ai_router.exceptions import BudgetExceeded, RouterError
from ai_router.executors import ExecutorTable
from ai_router.fallback_handler import FallbackHandler
from ai_router.langfuse_tracer import LangfuseTracer
from ai_router.model_registry import ModelRegistry
from ai_router.performance_monitor import PerformanceMonitor
from ai_router.routing_engine import RoutingEngine
from ai_router.schemas import (
    AIRequest,
    AIResponse,
    RoutingDecision,
    Urgency,
    UserPreferences,
)

logger = logging.getLogger(__name__)

PreferencesInput = Optional[Union[UserPreferences, Dict[str, Any]]]


class AIRouter:
    """
    Routes requests to AI backends

    Example:
        >>> executors = ExecutorTable({"claude-3-haiku": call_anthropic})
        >>> router = AIRouter(executors=executors)
        >>> response = await router.route("Classifier ce document DCE", urgency="fast")
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        registry: Optional[ModelRegistry] = None,
        executors: Optional[ExecutorTable] = None,
        monitor: Optional[PerformanceMonitor] = None,
        tracer: Optional[LangfuseTracer] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or RouterConfig()
        self._apply_log_level()
        self.clock = clock

        self.registry = registry or ModelRegistry()
        self.executors = executors if executors is not None else ExecutorTable()
        self.analyzer = ContextAnalyzer(self.config.analyzer)
        self.engine = RoutingEngine(self.config.routing)
        self.fallback_handler = FallbackHandler(self.config.fallback, clock=clock)
        self.cache = DecisionCache(self.config.cache, clock=clock)
        self.monitor = monitor or PerformanceMonitor(
            self.config.monitoring,
            target_latency_ms=self.config.routing.target_latency_ms,
            clock=clock,
            sink=self._build_metrics_sink()
        )
        self.tracer = tracer or LangfuseTracer(self.config.tracing)
        self._housekeeping_task: Optional[asyncio.Task] = None

        logger.info(
            f"AI router initialized with {len(self.registry.list_models())} models, "
            f"{len(self.executors.models())} executors"
        )

    def _apply_log_level(self):
        logging.getLogger("ai_router").setLevel(self.config.log_level)

    def _build_metrics_sink(self):
        if not self.config.monitoring.enable_mlflow:
            return None
        try:
            from ai_router.mlflow_tracking import MLflowMetricsSink

            return MLflowMetricsSink(
                tracking_uri=self.config.monitoring.mlflow_tracking_uri,
                experiment_name=self.config.monitoring.mlflow_experiment
            )
        except Exception as e:
            logger.warning(f"MLflow metrics mirror disabled: {e}")
            return None

    # ================== Request path ==================

    async def route(
        self,
        content: Optional[str],
        urgency: Union[Urgency, str] = Urgency.BALANCED,
        preferences: PreferencesInput = None,
        metadata: Optional[Dict[str, Any]] = None,
        deadline_ms: Optional[float] = None
    ) -> AIResponse:
        """
        Route a request and return the backend's enriched response

        Args:
            content: Request text
            urgency: fast, balanced or quality
            preferences: UserPreferences or a mapping of its fields
            metadata: Opaque metadata (`task_hint` overrides task classification)
            deadline_ms: Overall time budget; no attempt or backoff starts past it

        Returns:
            AIResponse with routing metadata

        Raises:
            RouterError: NoEligibleModel, BudgetExceeded, AllModelsFailed or DeadlineExceeded
            ValueError: If preferences are invalid
        """
        if isinstance(preferences, dict):
            preferences = UserPreferences.from_dict(preferences)

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + deadline_ms / 1000 if deadline_ms is not None else None

        context = self.analyzer.analyze(content, urgency, metadata)
        request = AIRequest(
            content=content or "",
            context=context,
            preferences=preferences,
            metadata=dict(metadata or {})
        )

        try:
            decision, cache_hit = self._decide(request)
            self._check_budget(decision, preferences)
            response = await self.fallback_handler.execute_with_fallback(
                request, decision, self.executors.execute, deadline
            )
        except RouterError as e:
            logger.error(f"Routing failed [{e.code}]: {e.message}")
            self.monitor.record_failure(request, e)
            self.tracer.emit("routing.failed", {**e.to_dict(), "task_type": context.task_type.value})
            raise

        response.metadata.update({
            "routing_decision": decision.selected_model,
            "decision_reasoning": decision.reasoning,
            "decision_confidence": decision.decision_confidence,
            "total_processing_time_ms": (loop.time() - started) * 1000,
            "cache_hit": cache_hit,
        })

        self.monitor.record(request, response, decision)
        self.tracer.emit("routing.decision", {
            "task_type": context.task_type.value,
            "urgency": context.urgency.value,
            "complexity": context.complexity,
            "selected_model": decision.selected_model,
            "responding_model": response.model,
            "estimated_cost": decision.estimated_cost,
            "cost": response.cost,
            "processing_time_ms": response.processing_time_ms,
            "cache_hit": cache_hit,
        })
        if response.fallback_used:
            self.tracer.emit("routing.fallback", {
                "selected_model": decision.selected_model,
                "responding_model": response.model,
                "reason": response.metadata.get("fallback_reason"),
            })

        logger.info(
            f"Routed {context.task_type.value} request to {response.model} "
            f"in {response.metadata['total_processing_time_ms']:.0f}ms (cache_hit={cache_hit})"
        )
        return response

    async def query(
        self,
        content: str,
        urgency: Union[Urgency, str] = Urgency.BALANCED,
        task_hint: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        preferences: PreferencesInput = None
    ) -> AIResponse:
        """Shortcut for `route` with an explicit task hint"""
        metadata = dict(metadata or {})
        if task_hint:
            metadata["task_hint"] = task_hint
        return await self.route(content, urgency=urgency, preferences=preferences, metadata=metadata)

    def decide(self, content: Optional[str], urgency: Union[Urgency, str] = Urgency.BALANCED,
               preferences: PreferencesInput = None, metadata: Optional[Dict[str, Any]] = None) -> RoutingDecision:
        """Analyze and route without executing (dry run, bypasses the cache)"""
        if isinstance(preferences, dict):
            preferences = UserPreferences.from_dict(preferences)
        context = self.analyzer.analyze(content, urgency, metadata)
        return self.engine.decide(
            context, self.registry.snapshot(), preferences, self.fallback_handler.blocked_models()
        )

    def _decide(self, request: AIRequest) -> Tuple[RoutingDecision, bool]:
        snapshot = self.registry.snapshot()
        blocked = self.fallback_handler.blocked_models()

        key = None
        if self.cache.should_cache(request.context):
            key = DecisionCache.fingerprint(request.context, request.content, request.preferences)
            cached = self.cache.get(key, snapshot.version, blocked)
            if cached is not None:
                logger.debug(f"Routing decision cache hit: {cached.selected_model}")
                return cached, True

        decision = self.engine.decide(request.context, snapshot, request.preferences, blocked)
        if key is not None:
            self.cache.put(key, decision, snapshot.version, blocked)
        return decision, False

    def _check_budget(self, decision: RoutingDecision, preferences: Optional[UserPreferences]):
        if preferences is None or preferences.max_cost_per_request is None:
            return
        if decision.estimated_cost > preferences.max_cost_per_request:
            raise BudgetExceeded(
                decision.estimated_cost, preferences.max_cost_per_request, decision.selected_model
            )

    # ================== Administration ==================

    def stats(self) -> Dict[str, Any]:
        metrics = self.monitor.current_metrics()
        return {
            "performance": metrics.to_dict(),
            "costs": {
                "total_cost": metrics.total_cost,
                "avg_cost_per_request": metrics.avg_cost_per_request,
                "cost_by_model": dict(metrics.cost_by_model),
            },
            "health": self.health_check(),
            "cache": self.cache.stats(),
            "routing": self.engine.get_routing_stats(),
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Aggregate health of the router

        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "details": {...}}
        """
        thresholds = self.config.health
        metrics = self.monitor.current_metrics()
        model_health = self.fallback_handler.model_health()
        unhealthy_models = sorted(m for m, state in model_health.items() if state == "unhealthy")

        status = "healthy"
        issues = []
        if metrics.fallback_rate > thresholds.degraded_fallback_rate:
            status = "degraded"
            issues.append(f"fallback rate {metrics.fallback_rate:.0%}")
        if metrics.avg_response_time_ms > thresholds.degraded_latency_ms:
            status = "degraded"
            issues.append(f"average latency {metrics.avg_response_time_ms:.0f}ms")
        if metrics.success_rate < thresholds.unhealthy_success_rate:
            status = "unhealthy"
            issues.append(f"success rate {metrics.success_rate:.0%}")
        if unhealthy_models:
            status = "unhealthy"
            issues.append(f"unhealthy models: {', '.join(unhealthy_models)}")

        return {
            "status": status,
            "details": {
                "request_count": metrics.request_count,
                "success_rate": metrics.success_rate,
                "fallback_rate": metrics.fallback_rate,
                "avg_response_time_ms": metrics.avg_response_time_ms,
                "models": model_health,
                "blocked_models": self.fallback_handler.blocked_models(),
                "issues": issues,
            },
        }

    def update_config(self, partial: Dict[str, Any]) -> RouterConfig:
        """
        Apply a partial configuration update

        The merged configuration is validated before anything changes; the
        decision cache is always cleared.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
        """
        new_config = self.config.merged(partial)
        tracing_changed = new_config.tracing != self.config.tracing
        self.config = new_config
        self._apply_log_level()

        self.analyzer.config = new_config.analyzer
        self.engine.config = new_config.routing

        fallback = new_config.fallback
        self.fallback_handler.config = fallback
        self.fallback_handler.circuit_breaker.failure_threshold = fallback.failure_threshold
        self.fallback_handler.circuit_breaker.window_seconds = fallback.failure_window_seconds
        self.fallback_handler.validator.min_length = fallback.min_response_length
        self.fallback_handler.validator.min_confidence = fallback.min_confidence

        self.monitor.config = new_config.monitoring
        self.monitor.target_latency_ms = dict(new_config.routing.target_latency_ms)
        self.cache.config = new_config.cache
        self.cache.clear()

        if tracing_changed:
            self.tracer = LangfuseTracer(new_config.tracing)

        logger.info(f"Router configuration updated: {sorted(partial)}")
        return new_config

    def reset(self):
        self.cache.clear()
        self.monitor.reset()
        self.fallback_handler.reset()
        self.engine.reset_history()
        logger.info("Router state reset")

    def recommendations(self):
        return self.monitor.recommendations(self.registry.snapshot().names())

    def apply_performance_feedback(self) -> Dict[str, float]:
        """
        Blend observed latencies into the registry profiles

        Returns:
            Model -> new avg_response_time_ms for every model updated
        """
        updated = {}
        weight = self.config.monitoring.feedback_weight
        for model, observed_ms in self.monitor.latency_averages().items():
            capabilities = self.registry.apply_observed_latency(model, observed_ms, weight=weight)
            if capabilities is not None:
                updated[model] = capabilities.avg_response_time_ms
        return updated

    # ================== Housekeeping ==================

    async def run_housekeeping(self) -> Dict[str, Any]:
        """One maintenance pass: cache eviction, metric pruning, circuit decay"""
        result = {
            "evicted_decisions": self.cache.evict_expired(),
            "pruned_samples": self.monitor.prune(),
            "pruned_failures": self.fallback_handler.cleanup(),
        }
        if self.config.monitoring.auto_tune_registry:
            result["tuned_models"] = self.apply_performance_feedback()
        logger.debug(f"Housekeeping: {result}")
        return result

    async def _housekeeping_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_housekeeping()
            except Exception as e:
                logger.error(f"Housekeeping pass failed: {e}")

    def start_housekeeping(self, interval: Optional[float] = None) -> asyncio.Task:
        """Schedule periodic housekeeping on the running event loop"""
        if self._housekeeping_task is not None and not self._housekeeping_task.done():
            return self._housekeeping_task
        interval = interval or self.config.housekeeping_interval_seconds
        self._housekeeping_task = asyncio.get_running_loop().create_task(self._housekeeping_loop(interval))
        logger.info(f"Housekeeping scheduled every {interval}s")
        return self._housekeeping_task

    async def stop_housekeeping(self):
        task, self._housekeeping_task = self._housekeeping_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self):
        await self.stop_housekeeping()
        self.tracer.flush()
        await self.monitor.drain_sink()
        if self.monitor.sink is not None and hasattr(self.monitor.sink, "close"):
            self.monitor.sink.close()


__all__ = ["AIRouter"]

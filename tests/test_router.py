"""End-to-end tests for the AIRouter orchestrator."""

import asyncio
import time

import pytest
from pydantic import ValidationError

from ai_router.exceptions import AllModelsFailed, BudgetExceeded, DeadlineExceeded, NoEligibleModel
from ai_router.executors import ExecutorTable
from ai_router.langfuse_tracer import LangfuseTracer
from ai_router.performance_monitor import PerformanceMonitor
from ai_router.router import AIRouter
from ai_router.schemas import FailureKind, ModelError, TaskType

from conftest import ScriptedExecutor

CLASSIFY_REQUEST = "Classifier ce document DCE"
CHAT_MODELS = ["claude-3.5-sonnet", "claude-3-haiku", "gpt-4o"]


class RecordingClient:
    def __init__(self):
        self.events = []

    def create_event(self, name, metadata):
        self.events.append((name, metadata))


class SlowSink:
    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self.samples = []

    def log_request(self, metrics):
        time.sleep(self.delay)
        self.samples.append(metrics)
        return True


def _table(executor: ScriptedExecutor) -> ExecutorTable:
    table = ExecutorTable()
    table.register_family(CHAT_MODELS + ["voyage-large-2-instruct"], executor)
    return table


def _open_circuit(router: AIRouter, model: str):
    breaker = router.fallback_handler.circuit_breaker
    for _ in range(breaker.failure_threshold + 1):
        breaker.record_failure(ModelError(model=model, error="down", kind=FailureKind.EXECUTION,
                                          timestamp=router.clock()))


@pytest.fixture()
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture()
def tracing_client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture()
def router(router_config, registry, executor, tracing_client, clock) -> AIRouter:
    return AIRouter(
        config=router_config,
        registry=registry,
        executors=_table(executor),
        tracer=LangfuseTracer(client=tracing_client),
        clock=clock,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Request path
# ─────────────────────────────────────────────────────────────────────────────

class TestRoute:

    @pytest.mark.asyncio
    async def test_response_is_enriched(self, router):
        response = await router.route(CLASSIFY_REQUEST, urgency="fast")
        decision = router.decide(CLASSIFY_REQUEST, urgency="fast")

        assert response.model == decision.selected_model
        assert response.metadata["routing_decision"] == decision.selected_model
        assert response.metadata["decision_reasoning"] == decision.reasoning
        assert response.metadata["decision_confidence"] == decision.decision_confidence
        assert response.metadata["total_processing_time_ms"] >= 0
        assert response.metadata["cache_hit"] is False
        assert response.fallback_used is False

    @pytest.mark.asyncio
    async def test_second_identical_request_hits_cache(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        response = await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert response.metadata["cache_hit"] is True
        assert router.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_cached_decision_matches_fresh_decision(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        context = router.analyzer.analyze(CLASSIFY_REQUEST, "fast")
        key = router.cache.fingerprint(context, CLASSIFY_REQUEST)
        cached = router.cache.get(key, router.registry.version)

        fresh = router.decide(CLASSIFY_REQUEST, urgency="fast")
        assert cached.selected_model == fresh.selected_model
        assert cached.fallback_chain == fresh.fallback_chain
        assert cached.invocation_params == fresh.invocation_params
        assert cached.estimated_cost == fresh.estimated_cost

    @pytest.mark.asyncio
    async def test_generation_is_not_cached(self, router):
        content = "Rédiger une proposition de réponse"
        await router.route(content)
        response = await router.route(content)
        assert response.metadata["cache_hit"] is False

    @pytest.mark.asyncio
    async def test_fallback(self, router, executor):
        decision = router.decide(CLASSIFY_REQUEST, urgency="fast")
        executor.behaviors[decision.selected_model] = RuntimeError("provider outage")

        response = await router.route(CLASSIFY_REQUEST, urgency="fast")

        assert response.model == decision.fallback_chain[0]
        assert response.fallback_used is True
        assert response.metadata["routing_decision"] == decision.selected_model
        assert router.monitor.current_metrics().fallback_rate == 1.0

    @pytest.mark.asyncio
    async def test_all_models_failed(self, router, executor):
        decision = router.decide(CLASSIFY_REQUEST, urgency="fast")
        for model in decision.models_to_try:
            executor.behaviors[model] = RuntimeError("down")

        with pytest.raises(AllModelsFailed) as exc_info:
            await router.route(CLASSIFY_REQUEST, urgency="fast")

        assert exc_info.value.attempted_models == decision.models_to_try
        metrics = router.monitor.current_metrics()
        assert metrics.failed_request_count == 1
        assert metrics.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_missing_executor_falls_back(self, router_config, registry, clock):
        executor = ScriptedExecutor()
        table = ExecutorTable()
        table.register("claude-3.5-sonnet", executor)
        router = AIRouter(config=router_config, registry=registry, executors=table, clock=clock)

        response = await router.route(CLASSIFY_REQUEST, urgency="fast",
                                      preferences={"excluded_models": ["gpt-4o"]})
        assert response.model == "claude-3.5-sonnet"

    @pytest.mark.asyncio
    async def test_hard_budget_fails_before_execution(self, router, executor):
        with pytest.raises(BudgetExceeded) as exc_info:
            await router.route(CLASSIFY_REQUEST, preferences={"max_cost_per_request": 0.0})
        assert exc_info.value.code == "BUDGET_EXCEEDED"
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_no_eligible_model(self, router, executor):
        with pytest.raises(NoEligibleModel):
            await router.route(CLASSIFY_REQUEST, preferences={"excluded_models": CHAT_MODELS})
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_invalid_preferences(self, router):
        with pytest.raises(ValueError):
            await router.route(CLASSIFY_REQUEST, preferences={"fastest": True})

    @pytest.mark.asyncio
    async def test_open_circuit_not_selected(self, router):
        first = await router.route(CLASSIFY_REQUEST, urgency="fast")
        _open_circuit(router, first.model)

        second = await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert second.metadata["cache_hit"] is False
        assert second.metadata["routing_decision"] != first.model
        assert second.model != first.model

    @pytest.mark.asyncio
    async def test_circuit_recovers_after_window(self, router, clock):
        blocked = router.decide(CLASSIFY_REQUEST, urgency="fast").selected_model
        _open_circuit(router, blocked)
        assert router.decide(CLASSIFY_REQUEST, urgency="fast").selected_model != blocked

        clock.advance(router.config.fallback.failure_window_seconds + 1)
        assert router.decide(CLASSIFY_REQUEST, urgency="fast").selected_model == blocked

    @pytest.mark.asyncio
    async def test_cached_detour_dropped_when_circuit_closes(self, router, clock):
        best = router.decide(CLASSIFY_REQUEST, urgency="fast").selected_model
        _open_circuit(router, best)
        clock.advance(200)

        detour = await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert detour.model != best
        assert await router.route(CLASSIFY_REQUEST, urgency="fast") is not None
        assert router.cache.stats()["hits"] == 1

        clock.advance(101)
        assert router.fallback_handler.blocked_models() == []
        response = await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert response.metadata["cache_hit"] is False
        assert response.model == best
        assert response.model == router.decide(CLASSIFY_REQUEST, urgency="fast").selected_model

    @pytest.mark.asyncio
    async def test_query_task_hint(self, router, executor):
        await router.query("Combien pour 3 serveurs ?", task_hint="calculate")
        assert executor.requests[-1].context.task_type == TaskType.CALCULATE

    @pytest.mark.asyncio
    async def test_embedding_request(self, router):
        response = await router.query("Recherche de marchés comparables", task_hint="embed")
        assert response.model == "voyage-large-2-instruct"

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, router):
        contents = [f"Classifier le document numéro {i}" for i in range(20)]
        responses = await asyncio.gather(*(router.route(c, urgency="fast") for c in contents))
        assert len(responses) == 20
        assert router.monitor.current_metrics().request_count == 20

    @pytest.mark.asyncio
    async def test_slow_metrics_sink_does_not_block_requests(self, router_config, registry, executor, clock):
        sink = SlowSink(delay=0.3)
        monitor = PerformanceMonitor(router_config.monitoring, clock=clock, sink=sink)
        router = AIRouter(config=router_config, registry=registry, executors=_table(executor),
                          monitor=monitor, clock=clock)
        ticks = []

        async def heartbeat():
            while True:
                ticks.append(1)
                await asyncio.sleep(0.01)

        beat = asyncio.ensure_future(heartbeat())
        loop = asyncio.get_running_loop()
        started = loop.time()
        contents = [f"Classifier le lot numéro {i}" for i in range(4)]
        await asyncio.gather(*(router.route(c, urgency="fast") for c in contents))
        elapsed = loop.time() - started
        await asyncio.sleep(0.05)
        beat.cancel()
        with pytest.raises(asyncio.CancelledError):
            await beat

        assert elapsed < sink.delay
        assert len(ticks) > 1

        await router.close()
        assert len(sink.samples) == 4

    @pytest.mark.asyncio
    async def test_deadline_stops_backoff(self, router_config, registry, clock):
        config = router_config.merged({"fallback": {"backoff_base_ms": 1000}})
        executor = ScriptedExecutor({m: RuntimeError("down") for m in CHAT_MODELS})
        router = AIRouter(config=config, registry=registry, executors=_table(executor), clock=clock)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await router.route(CLASSIFY_REQUEST, urgency="fast", deadline_ms=100)
        assert exc_info.value.code == "DEADLINE_EXCEEDED"
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_zero_deadline_is_already_expired(self, router, executor):
        with pytest.raises(DeadlineExceeded):
            await router.route(CLASSIFY_REQUEST, urgency="fast", deadline_ms=0)
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_events_are_traced(self, router, tracing_client, executor):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        decision = router.decide(CLASSIFY_REQUEST, urgency="fast")
        executor.behaviors[decision.selected_model] = RuntimeError("down")
        router.cache.clear()
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        with pytest.raises(BudgetExceeded):
            await router.route(CLASSIFY_REQUEST, preferences={"max_cost_per_request": 0.0})

        names = [name for name, _ in tracing_client.events]
        assert names == ["routing.decision", "routing.decision", "routing.fallback", "routing.failed"]
        assert tracing_client.events[-1][1]["code"] == "BUDGET_EXCEEDED"


# ─────────────────────────────────────────────────────────────────────────────
# Administration
# ─────────────────────────────────────────────────────────────────────────────

class TestAdministration:

    def test_healthy_when_idle(self, router):
        health = router.health_check()
        assert health["status"] == "healthy"
        assert health["details"]["issues"] == []

    @pytest.mark.asyncio
    async def test_unhealthy_after_failures(self, router, executor):
        for model in CHAT_MODELS:
            executor.behaviors[model] = RuntimeError("down")
        for _ in range(2):
            with pytest.raises(AllModelsFailed):
                await router.route(CLASSIFY_REQUEST, urgency="fast")

        health = router.health_check()
        assert health["status"] == "unhealthy"
        assert health["details"]["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_degraded_on_fallback_rate(self, router, executor):
        decision = router.decide(CLASSIFY_REQUEST, urgency="fast")
        executor.behaviors[decision.selected_model] = RuntimeError("down")
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert router.health_check()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_unhealthy_when_a_circuit_is_open(self, router):
        _open_circuit(router, "gpt-4o")
        health = router.health_check()
        assert health["status"] == "unhealthy"
        assert health["details"]["blocked_models"] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_stats(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        stats = router.stats()
        assert set(stats) >= {"performance", "costs", "health", "cache"}
        assert stats["performance"]["request_count"] == 1
        assert stats["costs"]["total_cost"] == pytest.approx(0.002)
        assert stats["cache"]["size"] == 1

    @pytest.mark.asyncio
    async def test_update_config_clears_cache_and_reweights(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        router.update_config({"routing": {"urgency_weights": {"fast": {"speed": 0.0}}}})

        assert len(router.cache) == 0
        context = router.analyzer.analyze(CLASSIFY_REQUEST, "fast")
        assert router.engine.calculate_weights(context)["speed"] == 0.0

    def test_invalid_update_leaves_config_untouched(self, router):
        before = router.config
        with pytest.raises(ValidationError):
            router.update_config({"fallback": {"timeout_ms": -5}})
        assert router.config is before

    def test_update_config_reaches_fallback_handler(self, router):
        router.update_config({"fallback": {"failure_threshold": 1, "enable_fallback": False}})
        assert router.fallback_handler.circuit_breaker.failure_threshold == 1
        assert router.fallback_handler.config.enable_fallback is False

    @pytest.mark.asyncio
    async def test_reset(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        _open_circuit(router, "gpt-4o")
        router.reset()
        assert router.monitor.current_metrics().request_count == 0
        assert router.fallback_handler.blocked_models() == []
        assert len(router.cache) == 0

    @pytest.mark.asyncio
    async def test_performance_feedback_updates_registry(self, router):
        response = await router.route(CLASSIFY_REQUEST, urgency="fast")
        before = router.registry.get_model(response.model).avg_response_time_ms
        version = router.registry.version

        updated = router.apply_performance_feedback()

        assert response.model in updated
        assert updated[response.model] < before
        assert router.registry.version > version

    @pytest.mark.asyncio
    async def test_recommendations(self, router):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        assert router.recommendations() == []


# ─────────────────────────────────────────────────────────────────────────────
# Housekeeping
# ─────────────────────────────────────────────────────────────────────────────

class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_run_housekeeping(self, router, clock):
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        clock.advance(8 * 24 * 3600)
        result = await router.run_housekeeping()
        assert result["evicted_decisions"] == 1
        assert result["pruned_samples"] > 0
        assert "tuned_models" not in result

    @pytest.mark.asyncio
    async def test_auto_tune(self, router):
        router.update_config({"monitoring": {"auto_tune_registry": True}})
        await router.route(CLASSIFY_REQUEST, urgency="fast")
        result = await router.run_housekeeping()
        assert result["tuned_models"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, router):
        task = router.start_housekeeping(interval=0.01)
        assert router.start_housekeeping() is task
        await asyncio.sleep(0.05)
        await router.stop_housekeeping()
        assert task.cancelled()
        await router.close()

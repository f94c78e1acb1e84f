"""Tests for multi-criteria model selection."""

import pytest

from ai_router.config import RoutingConfig
from ai_router.exceptions import NoEligibleModel
from ai_router.model_registry import ModelRegistry
from ai_router.routing_engine import RoutingEngine
from ai_router.schemas import (
    LanguageOptimization,
    Priority,
    TaskType,
    Urgency,
    UserPreferences,
)

SPECIALIZED = LanguageOptimization.SPECIALIZED


@pytest.fixture()
def engine() -> RoutingEngine:
    return RoutingEngine()


@pytest.fixture()
def classify_context(make_context):
    return make_context(
        task_type=TaskType.CLASSIFY, complexity=2, tokens=500,
        urgency=Urgency.FAST, budget=0.05, language=SPECIALIZED,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Selection
# ─────────────────────────────────────────────────────────────────────────────

class TestSelection:

    def test_fast_classification_picks_haiku(self, engine, registry, classify_context):
        decision = engine.decide(classify_context, registry.snapshot())
        assert decision.selected_model == "claude-3-haiku"
        assert decision.fallback_chain == ("claude-3.5-sonnet", "gpt-4o")
        assert decision.estimated_time_ms == 1050
        assert decision.estimated_cost == 0.005
        assert decision.registry_version == registry.version

    def test_large_analysis_only_fits_sonnet(self, engine, registry, make_context):
        context = make_context(
            task_type=TaskType.ANALYZE, complexity=8, tokens=5000,
            urgency=Urgency.QUALITY, budget=0.5, language=SPECIALIZED,
        )
        decision = engine.decide(context, registry.snapshot())
        assert decision.selected_model == "claude-3.5-sonnet"
        assert decision.fallback_chain == ()

    def test_quality_priority_calculation_picks_gpt4o(self, engine, registry, make_context):
        context = make_context(task_type=TaskType.CALCULATE, complexity=5, tokens=2000, budget=0.2)
        decision = engine.decide(context, registry.snapshot(), UserPreferences(priority="quality"))
        assert decision.selected_model == "gpt-4o"

    def test_embedding_goes_to_embedding_model(self, engine, registry, make_context):
        decision = engine.decide(make_context(task_type=TaskType.EMBED), registry.snapshot())
        assert decision.selected_model == "voyage-large-2-instruct"

    def test_single_eligible_model_always_selected(self, engine, registry, make_context):
        for name in ("claude-3.5-sonnet", "claude-3-haiku", "voyage-large-2-instruct"):
            registry.set_availability(name, False)
        # gpt-4o scores poorly on a fast, tight-budget request but is the only candidate
        context = make_context(task_type=TaskType.CLASSIFY, urgency=Urgency.FAST, tokens=3000, budget=0.01)
        decision = engine.decide(context, registry.snapshot())
        assert decision.selected_model == "gpt-4o"
        assert decision.scores["cost"] == 0.0

    def test_over_budget_is_advisory(self, engine, registry, make_context):
        context = make_context(task_type=TaskType.ANALYZE, tokens=3000, budget=0.0)
        decision = engine.decide(context, registry.snapshot())
        assert decision.selected_model in registry.snapshot().names()


# ─────────────────────────────────────────────────────────────────────────────
# Eligibility
# ─────────────────────────────────────────────────────────────────────────────

class TestEligibility:

    def test_no_available_models(self, engine, registry, make_context):
        for model in registry.list_models():
            registry.set_availability(model.name, False)
        with pytest.raises(NoEligibleModel) as exc_info:
            engine.decide(make_context(), registry.snapshot())
        assert exc_info.value.code == "NO_ELIGIBLE_MODEL"

    def test_empty_registry(self, engine, make_context):
        with pytest.raises(NoEligibleModel):
            engine.decide(make_context(), ModelRegistry(models=[]).snapshot())

    def test_excluded_models(self, engine, registry, classify_context):
        prefs = UserPreferences(excluded_models=["claude-3-haiku"])
        decision = engine.decide(classify_context, registry.snapshot(), prefs)
        assert decision.selected_model != "claude-3-haiku"
        assert "claude-3-haiku" not in decision.fallback_chain

    def test_blocked_models_never_selected(self, engine, registry, classify_context):
        decision = engine.decide(classify_context, registry.snapshot(), blocked_models=["claude-3-haiku"])
        assert decision.selected_model != "claude-3-haiku"
        assert "claude-3-haiku" not in decision.fallback_chain

    def test_token_limit(self, engine, registry, make_context):
        decision = engine.decide(make_context(tokens=6000), registry.snapshot())
        assert registry.get_model(decision.selected_model).max_tokens >= 6000

    def test_specialized_language_support_required(self, engine, make_context, make_model):
        registry = ModelRegistry(
            models=[make_model("plain"), make_model("fluent", supports_specialized_language=True)],
            fallback_adjacency={}
        )
        decision = engine.decide(make_context(language=SPECIALIZED), registry.snapshot())
        assert decision.selected_model == "fluent"


# ─────────────────────────────────────────────────────────────────────────────
# Determinism and tie-breaking
# ─────────────────────────────────────────────────────────────────────────────

class TestDeterminism:

    def test_same_inputs_same_decision(self, engine, registry, classify_context):
        snapshot = registry.snapshot()
        first = engine.decide(classify_context, snapshot)
        second = engine.decide(classify_context, snapshot)
        assert first == second

    def test_tie_broken_by_lower_cost(self, engine, make_context, make_model):
        registry = ModelRegistry(
            models=[make_model("pricey", cost_per_token=0.00002), make_model("cheap", cost_per_token=0.00001)],
            fallback_adjacency={}
        )
        decision = engine.decide(make_context(tokens=100, budget=1.0), registry.snapshot())
        assert decision.selected_model == "cheap"

    def test_tie_broken_by_insertion_order(self, engine, make_context, make_model):
        registry = ModelRegistry(models=[make_model("first"), make_model("second")], fallback_adjacency={})
        decision = engine.decide(make_context(tokens=100, budget=1.0), registry.snapshot())
        assert decision.selected_model == "first"

    def test_preferred_model_wins_ties(self, engine, make_context, make_model):
        registry = ModelRegistry(models=[make_model("first"), make_model("second")], fallback_adjacency={})
        prefs = UserPreferences(preferred_models=["second"])
        decision = engine.decide(make_context(tokens=100, budget=1.0), registry.snapshot(), prefs)
        assert decision.selected_model == "second"


# ─────────────────────────────────────────────────────────────────────────────
# Fallback chains, weights, params, confidence
# ─────────────────────────────────────────────────────────────────────────────

class TestDecisionDetails:

    @pytest.mark.parametrize("task_type", list(TaskType))
    @pytest.mark.parametrize("urgency", list(Urgency))
    def test_chain_invariants(self, engine, registry, make_context, task_type, urgency):
        decision = engine.decide(make_context(task_type=task_type, urgency=urgency), registry.snapshot())
        assert decision.selected_model not in decision.fallback_chain
        assert len(decision.fallback_chain) <= 3
        assert len(set(decision.fallback_chain)) == len(decision.fallback_chain)
        assert 0.0 <= decision.decision_confidence <= 1.0

    def test_chain_only_contains_registered_eligible_models(self, engine, registry, classify_context):
        registry.set_availability("gpt-4o", False)
        decision = engine.decide(classify_context, registry.snapshot())
        assert decision.fallback_chain == ("claude-3.5-sonnet",)

    def test_chain_capped_by_config(self, registry, classify_context):
        engine = RoutingEngine(RoutingConfig(max_fallbacks=1))
        decision = engine.decide(classify_context, registry.snapshot())
        assert len(decision.fallback_chain) == 1

    def test_fast_urgency_weights_favor_speed(self, engine, make_context):
        weights = engine.calculate_weights(make_context(urgency=Urgency.FAST))
        assert max(weights, key=weights.get) == "speed"
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_priority_rescales_and_renormalizes(self, engine, make_context):
        context = make_context(urgency=Urgency.BALANCED)
        base = engine.calculate_weights(context)
        cost_first = engine.calculate_weights(context, UserPreferences(priority=Priority.COST))
        assert cost_first["cost"] > base["cost"]
        assert cost_first["performance"] < base["performance"]
        assert sum(cost_first.values()) == pytest.approx(1.0)

    @pytest.mark.parametrize("task_type,temperature", [
        (TaskType.CLASSIFY, 0.1),
        (TaskType.CALCULATE, 0.0),
        (TaskType.GENERATE, 0.7),
        (TaskType.ANALYZE, 0.3),
    ])
    def test_temperature_policy(self, engine, registry, make_context, task_type, temperature):
        params = engine.generate_params(registry.get_model("claude-3.5-sonnet"), make_context(task_type=task_type))
        assert params.temperature == temperature

    def test_token_budget_bounds(self, engine, registry, make_context):
        sonnet = registry.get_model("claude-3.5-sonnet")
        assert engine.generate_params(sonnet, make_context(tokens=100)).max_tokens == 500
        assert engine.generate_params(sonnet, make_context(tokens=1000)).max_tokens == 1500
        assert engine.generate_params(sonnet, make_context(tokens=5000)).max_tokens == 2000

    def test_token_budget_respects_model_ceiling(self, engine, make_context, make_model):
        model = make_model("small-output", max_output_tokens=600)
        assert engine.generate_params(model, make_context(tokens=1000)).max_tokens == 600

    @pytest.mark.parametrize("task_type,fragment", [
        (TaskType.CLASSIFY, "classifier avec précision les documents DCE"),
        (TaskType.EXTRACT, "extraire et structurer"),
        (TaskType.ANALYZE, "recommandations stratégiques"),
        (TaskType.CALCULATE, "calculs précis de coûts"),
    ])
    def test_system_prompt_per_task(self, engine, registry, make_context, task_type, fragment):
        params = engine.generate_params(registry.get_model("claude-3.5-sonnet"), make_context(task_type=task_type))
        assert params.system_prompt.startswith("Tu es un assistant IA expert")
        assert fragment in params.system_prompt

    def test_system_prompt_without_task_clause(self, engine, make_context):
        prompt = engine.build_system_prompt(make_context(task_type=TaskType.GENERATE))
        assert prompt == RoutingConfig().system_prompt_base

    def test_system_prompt_rigor_and_terminology(self, engine, make_context):
        config = RoutingConfig()
        plain = engine.build_system_prompt(make_context(complexity=7))
        assert config.rigor_prompt not in plain
        assert config.specialized_prompt not in plain

        demanding = engine.build_system_prompt(make_context(complexity=8, language=SPECIALIZED))
        assert demanding.endswith(f"{config.rigor_prompt} {config.specialized_prompt}")

    def test_system_prompt_table_is_configurable(self, make_context):
        engine = RoutingEngine(RoutingConfig(
            system_prompt_base="Assistant achats publics.",
            task_system_prompts={TaskType.CLASSIFY: "Classe le document."},
        ))
        prompt = engine.build_system_prompt(make_context(task_type=TaskType.CLASSIFY))
        assert prompt == "Assistant achats publics. Classe le document."

    def test_decision_carries_system_prompt(self, engine, registry, classify_context):
        decision = engine.decide(classify_context, registry.snapshot())
        assert "DCE" in decision.invocation_params.system_prompt

    def test_confidence_discounted_for_high_complexity(self, engine, registry, make_context):
        snapshot = registry.snapshot()
        simple = engine.decide(make_context(complexity=5, tokens=100), snapshot)
        hard = engine.decide(make_context(complexity=9, tokens=100), snapshot)
        assert hard.decision_confidence < simple.decision_confidence

    def test_routing_history(self, engine, registry, classify_context):
        engine.decide(classify_context, registry.snapshot())
        engine.decide(classify_context, registry.snapshot())
        stats = engine.get_routing_stats()
        assert stats["total_requests"] == 2
        assert stats["model_usage"] == {"claude-3-haiku": 2}
        assert engine.get_model_usage_stats()["claude-3-haiku"]["usage_percentage"] == 100.0
        engine.reset_history()
        assert engine.get_routing_stats() == {}

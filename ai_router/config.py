"""
Router configuration

All tunable tables of the router (analyzer heuristics, scoring weights,
fallback/circuit-breaker limits, cache policy, monitoring thresholds) live in
one validated pydantic model. `RouterConfig.from_env()` reads overrides from
the process environment and an optional .env file.
"""

import os
import logging
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ai_router.schemas import TaskType, Urgency, LanguageOptimization, Priority

logger = logging.getLogger(__name__)

CRITERIA = ("performance", "cost", "quality", "speed", "availability", "task_fit")


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AnalyzerConfig(_Section):
    """Heuristic tables used by the context analyzer"""
    base_costs: Dict[TaskType, float] = Field(default_factory=lambda: {
        TaskType.CLASSIFY: 0.05,
        TaskType.EXTRACT: 0.15,
        TaskType.GENERATE: 0.25,
        TaskType.CALCULATE: 0.10,
        TaskType.EMBED: 0.02,
        TaskType.ANALYZE: 0.30,
    })
    urgency_multipliers: Dict[Urgency, float] = Field(default_factory=lambda: {
        Urgency.FAST: 1.0,
        Urgency.BALANCED: 1.2,
        Urgency.QUALITY: 1.5,
    })
    chars_per_token: Dict[LanguageOptimization, float] = Field(default_factory=lambda: {
        LanguageOptimization.GENERAL: 4.0,
        LanguageOptimization.SPECIALIZED: 3.5,
    })
    specialized_indicator_threshold: int = Field(default=5, ge=0)

    @field_validator("base_costs", "urgency_multipliers")
    @classmethod
    def _non_negative(cls, value: Dict[Any, float]) -> Dict[Any, float]:
        for key, amount in value.items():
            if amount < 0:
                raise ValueError(f"{key} must be >= 0, got {amount}")
        return value

    @field_validator("chars_per_token")
    @classmethod
    def _positive(cls, value: Dict[Any, float]) -> Dict[Any, float]:
        for key, amount in value.items():
            if amount <= 0:
                raise ValueError(f"chars_per_token[{key}] must be > 0, got {amount}")
        return value


class RoutingConfig(_Section):
    """Scoring weights and targets used by the routing engine"""
    urgency_weights: Dict[Urgency, Dict[str, float]] = Field(default_factory=lambda: {
        Urgency.FAST: {
            "performance": 0.15, "cost": 0.15, "quality": 0.15,
            "speed": 0.35, "availability": 0.10, "task_fit": 0.10,
        },
        Urgency.BALANCED: {
            "performance": 0.20, "cost": 0.20, "quality": 0.25,
            "speed": 0.20, "availability": 0.10, "task_fit": 0.05,
        },
        Urgency.QUALITY: {
            "performance": 0.30, "cost": 0.10, "quality": 0.35,
            "speed": 0.10, "availability": 0.10, "task_fit": 0.05,
        },
    })
    priority_multipliers: Dict[Priority, Dict[str, float]] = Field(default_factory=lambda: {
        Priority.COST: {"cost": 1.5, "performance": 0.8},
        Priority.SPEED: {"speed": 1.5, "quality": 0.8},
        Priority.QUALITY: {"quality": 1.5, "cost": 0.8},
        Priority.BALANCED: {},
    })
    target_latency_ms: Dict[Urgency, float] = Field(default_factory=lambda: {
        Urgency.FAST: 2000.0,
        Urgency.BALANCED: 5000.0,
        Urgency.QUALITY: 10000.0,
    })
    max_fallbacks: int = Field(default=3, ge=0, le=3)
    min_output_tokens: int = Field(default=500, gt=0)
    max_output_tokens: int = Field(default=2000, gt=0)

    # System prompt handed to executors: base + task clause + optional rigor / terminology clauses
    system_prompt_base: str = "Tu es un assistant IA expert spécialisé en marchés publics français."
    task_system_prompts: Dict[TaskType, str] = Field(default_factory=lambda: {
        TaskType.CLASSIFY: "Ta tâche est de classifier avec précision les documents DCE français (CCTP, CCP, BPU, RC).",
        TaskType.EXTRACT: "Tu dois extraire et structurer les informations techniques et contractuelles des documents français.",
        TaskType.ANALYZE: "Fournis des analyses expertes et des recommandations stratégiques pour les appels d'offres.",
        TaskType.CALCULATE: "Effectue des calculs précis de coûts et d'estimations pour les prestations IT.",
    })
    rigor_complexity: int = Field(default=8, ge=1, le=10)
    rigor_prompt: str = "Le contexte est très complexe, sois particulièrement rigoureux et détaillé."
    specialized_prompt: str = "Utilise une terminologie française précise et spécialisée."

    @field_validator("urgency_weights")
    @classmethod
    def _complete_weights(cls, value: Dict[Urgency, Dict[str, float]]):
        for urgency, weights in value.items():
            missing = set(CRITERIA) - set(weights)
            if missing:
                raise ValueError(f"weights for {urgency.value} missing {sorted(missing)}")
            if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
                raise ValueError(f"weights for {urgency.value} must be non-negative with a positive sum")
        return value

    @field_validator("priority_multipliers")
    @classmethod
    def _known_criteria(cls, value: Dict[Priority, Dict[str, float]]):
        for priority, multipliers in value.items():
            unknown = set(multipliers) - set(CRITERIA)
            if unknown:
                raise ValueError(f"unknown criteria for {priority.value}: {sorted(unknown)}")
            if any(m < 0 for m in multipliers.values()):
                raise ValueError(f"multipliers for {priority.value} must be >= 0")
        return value

    @model_validator(mode="after")
    def _weights_survive_priorities(self) -> "RoutingConfig":
        for urgency, weights in self.urgency_weights.items():
            for priority, multipliers in self.priority_multipliers.items():
                total = sum(w * multipliers.get(c, 1.0) for c, w in weights.items())
                if total <= 0:
                    raise ValueError(
                        f"priority {priority.value} leaves no positive weight for urgency {urgency.value}"
                    )
        return self


class FallbackConfig(_Section):
    enable_fallback: bool = True
    timeout_ms: float = Field(default=10000.0, gt=0)
    backoff_base_ms: float = Field(default=1000.0, ge=0)
    backoff_jitter_ms: float = Field(default=1000.0, ge=0)
    failure_threshold: int = Field(default=5, ge=0)
    failure_window_seconds: float = Field(default=300.0, gt=0)
    error_history_size: int = Field(default=100, gt=0)
    min_response_length: int = Field(default=10, ge=0)
    min_confidence: float = Field(default=0.3, ge=0, le=1)


class CacheConfig(_Section):
    enable_cache: bool = True
    ttl_seconds: float = Field(default=300.0, gt=0)
    max_size: int = Field(default=1000, gt=0)
    max_complexity: int = Field(default=7, ge=1, le=10)
    max_content_tokens: int = Field(default=5000, gt=0)


class MonitoringConfig(_Section):
    enable_metrics: bool = True
    sample_rate: float = Field(default=1.0, ge=0, le=1)
    history_size: int = Field(default=1000, gt=0)
    min_anomaly_samples: int = Field(default=10, ge=1)
    latency_anomaly_factor: float = Field(default=3.0, gt=0)
    cost_anomaly_factor: float = Field(default=2.0, gt=0)
    confidence_floor: float = Field(default=0.3, ge=0, le=1)
    critical_latency_ms: float = Field(default=15000.0, gt=0)
    hourly_cost_limit: float = Field(default=10.0, ge=0)
    slow_response_ms: float = Field(default=5000.0, gt=0)
    fallback_rate_limit: float = Field(default=0.1, ge=0, le=1)
    low_confidence_limit: float = Field(default=0.5, ge=0, le=1)
    retention_days: float = Field(default=7.0, gt=0)
    auto_tune_registry: bool = False
    feedback_weight: float = Field(default=0.3, ge=0, le=1)
    enable_mlflow: bool = False
    mlflow_tracking_uri: Optional[str] = None
    mlflow_experiment: str = "ai-router"


class HealthConfig(_Section):
    degraded_fallback_rate: float = Field(default=0.2, ge=0, le=1)
    degraded_latency_ms: float = Field(default=8000.0, gt=0)
    unhealthy_success_rate: float = Field(default=0.8, ge=0, le=1)


class TracingConfig(_Section):
    enable_langfuse: bool = False
    langfuse_public_key: Optional[str] = None
    langfuse_secret_key: Optional[str] = None
    langfuse_host: str = "https://cloud.langfuse.com"


class RouterConfig(_Section):
    """Complete router configuration"""
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    tracing: TracingConfig = Field(default_factory=TracingConfig)
    log_level: str = "INFO"
    housekeeping_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    def merged(self, partial: Dict[str, Any]) -> "RouterConfig":
        """
        Return a new configuration with `partial` deep-merged on top

        Args:
            partial: Nested mapping of the fields to change

        Returns:
            Validated RouterConfig

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
        """
        data = _deep_merge(self.model_dump(mode="json"), partial or {})
        return RouterConfig.model_validate(data)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "RouterConfig":
        """
        Build a configuration from environment variables

        A .env file is loaded first (existing variables win). Recognized
        variables: AI_ROUTER_LOG_LEVEL, AI_ROUTER_TIMEOUT_MS,
        AI_ROUTER_ENABLE_FALLBACK, AI_ROUTER_ENABLE_CACHE,
        AI_ROUTER_CACHE_TTL_SECONDS, AI_ROUTER_ENABLE_MLFLOW,
        MLFLOW_TRACKING_URI, AI_ROUTER_ENABLE_LANGFUSE, LANGFUSE_PUBLIC_KEY,
        LANGFUSE_SECRET_KEY, LANGFUSE_HOST.
        """
        load_dotenv(dotenv_path=dotenv_path)

        overrides: Dict[str, Any] = {}

        def put(section: str, key: str, value: Any):
            overrides.setdefault(section, {})[key] = value

        if os.getenv("AI_ROUTER_LOG_LEVEL"):
            overrides["log_level"] = os.getenv("AI_ROUTER_LOG_LEVEL")
        if os.getenv("AI_ROUTER_TIMEOUT_MS"):
            put("fallback", "timeout_ms", float(os.getenv("AI_ROUTER_TIMEOUT_MS")))
        if os.getenv("AI_ROUTER_ENABLE_FALLBACK"):
            put("fallback", "enable_fallback", _env_bool(os.getenv("AI_ROUTER_ENABLE_FALLBACK")))
        if os.getenv("AI_ROUTER_ENABLE_CACHE"):
            put("cache", "enable_cache", _env_bool(os.getenv("AI_ROUTER_ENABLE_CACHE")))
        if os.getenv("AI_ROUTER_CACHE_TTL_SECONDS"):
            put("cache", "ttl_seconds", float(os.getenv("AI_ROUTER_CACHE_TTL_SECONDS")))
        if os.getenv("AI_ROUTER_ENABLE_MLFLOW"):
            put("monitoring", "enable_mlflow", _env_bool(os.getenv("AI_ROUTER_ENABLE_MLFLOW")))
        if os.getenv("MLFLOW_TRACKING_URI"):
            put("monitoring", "mlflow_tracking_uri", os.getenv("MLFLOW_TRACKING_URI"))
        if os.getenv("AI_ROUTER_ENABLE_LANGFUSE"):
            put("tracing", "enable_langfuse", _env_bool(os.getenv("AI_ROUTER_ENABLE_LANGFUSE")))
        if os.getenv("LANGFUSE_PUBLIC_KEY"):
            put("tracing", "langfuse_public_key", os.getenv("LANGFUSE_PUBLIC_KEY"))
        if os.getenv("LANGFUSE_SECRET_KEY"):
            put("tracing", "langfuse_secret_key", os.getenv("LANGFUSE_SECRET_KEY"))
        if os.getenv("LANGFUSE_HOST"):
            put("tracing", "langfuse_host", os.getenv("LANGFUSE_HOST"))

        config = cls().merged(overrides)
        logger.info(f"Loaded router configuration from environment ({len(overrides)} overridden sections)")
        return config


__all__ = [
    "CRITERIA",
    "AnalyzerConfig",
    "RoutingConfig",
    "FallbackConfig",
    "CacheConfig",
    "MonitoringConfig",
    "HealthConfig",
    "TracingConfig",
    "RouterConfig",
]

"""
Shared data model for the AI router

Requests, analyzed contexts, routing decisions and backend responses that
flow between the analyzer, the routing engine, the fallback handler and the
performance monitor.
"""

from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field, asdict
from enum import Enum
import time


class TaskType(str, Enum):
    """Kinds of work a request asks a backend to do"""
    CLASSIFY = "CLASSIFY"
    EXTRACT = "EXTRACT"
    GENERATE = "GENERATE"
    CALCULATE = "CALCULATE"
    EMBED = "EMBED"
    ANALYZE = "ANALYZE"


class Urgency(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"


class LanguageOptimization(str, Enum):
    SPECIALIZED = "specialized"
    GENERAL = "general"


class Priority(str, Enum):
    """User-level bias applied on top of the urgency weights"""
    COST = "cost"
    SPEED = "speed"
    QUALITY = "quality"
    BALANCED = "balanced"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    VALIDATION = "validation"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ContextAnalysis:
    """Structured view of a raw request, produced once per request"""
    complexity: int
    content_size_tokens: int
    task_type: TaskType
    urgency: Urgency
    cost_budget: float
    language_optimization: LanguageOptimization
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["task_type"] = self.task_type.value
        data["urgency"] = self.urgency.value
        data["language_optimization"] = self.language_optimization.value
        return data


@dataclass
class UserPreferences:
    """Caller preferences recognized by the routing engine"""
    priority: Priority = Priority.BALANCED
    preferred_models: List[str] = field(default_factory=list)
    excluded_models: List[str] = field(default_factory=list)
    max_cost_per_request: Optional[float] = None
    max_response_time_ms: Optional[float] = None

    def __post_init__(self):
        self.priority = Priority(self.priority)
        self.preferred_models = list(self.preferred_models or [])
        self.excluded_models = list(self.excluded_models or [])
        if self.max_cost_per_request is not None and self.max_cost_per_request < 0:
            raise ValueError(
                f"max_cost_per_request must be >= 0, got {self.max_cost_per_request}"
            )
        if self.max_response_time_ms is not None and self.max_response_time_ms <= 0:
            raise ValueError(
                f"max_response_time_ms must be > 0, got {self.max_response_time_ms}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserPreferences":
        """Build preferences from a plain mapping (unknown keys are rejected)"""
        data = dict(data or {})
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown preference options: {sorted(unknown)}")
        return cls(**data)

    def fingerprint(self) -> Tuple[Any, ...]:
        """Hashable view used when caching decisions"""
        return (
            self.priority.value,
            tuple(self.preferred_models),
            tuple(sorted(self.excluded_models)),
            self.max_response_time_ms,
        )


@dataclass(frozen=True)
class InvocationParams:
    """Backend invocation parameters chosen by the routing engine"""
    max_tokens: int
    temperature: float
    top_p: float = 0.9
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    system_prompt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoutingDecision:
    """Selected backend, its fallback chain and invocation parameters"""
    selected_model: str
    fallback_chain: Tuple[str, ...]
    reasoning: str
    estimated_cost: float
    estimated_time_ms: int
    decision_confidence: float
    invocation_params: InvocationParams
    scores: Dict[str, float] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)
    registry_version: int = 0

    @property
    def models_to_try(self) -> List[str]:
        return [self.selected_model, *self.fallback_chain]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fallback_chain"] = list(self.fallback_chain)
        return data


@dataclass
class AIRequest:
    """A request travelling through the execution pipeline"""
    content: str
    context: ContextAnalysis
    preferences: Optional[UserPreferences] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class AIResponse:
    """Backend answer, enriched in place by the router"""
    content: str
    model: str
    processing_time_ms: float = 0.0
    cost: float = 0.0
    confidence: float = 0.0
    tokens_used: Optional[TokenUsage] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def fallback_used(self) -> bool:
        return bool(self.metadata.get("fallback_used", False))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModelError:
    """One failed attempt against a backend"""
    model: str
    error: str
    kind: FailureKind
    timestamp: float = field(default_factory=time.time)
    retry_count: int = 0
    request_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


__all__ = [
    "TaskType",
    "Urgency",
    "LanguageOptimization",
    "Priority",
    "FailureKind",
    "ContextAnalysis",
    "UserPreferences",
    "InvocationParams",
    "RoutingDecision",
    "AIRequest",
    "TokenUsage",
    "AIResponse",
    "ModelError",
]

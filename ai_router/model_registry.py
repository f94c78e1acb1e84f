import logging
import threading
from types import MappingProxyType
from typing import Dict, Any, List, Optional, Iterable, Mapping
from dataclasses import dataclass, field, asdict, replace

from ai_router.schemas import TaskType

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    """Capability and live-state profile of one backend"""
    name: str
    max_tokens: int = 4000
    supports_function: bool = False
    supports_specialized_language: bool = False
    supports_structured_output: bool = False
    avg_response_time_ms: float = 1000.0
    cost_per_token: float = 0.0
    quality_score: float = 0.5
    specialized_accuracy: float = 0.5
    is_available: bool = True
    rate_limit_per_minute: int = 100
    current_load: float = 0.0
    optimal_for: frozenset = field(default_factory=frozenset)
    supported_tasks: Optional[frozenset] = None  # None = every task type
    max_output_tokens: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Model must have a name")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0 for '{self.name}'")
        for attr in ("quality_score", "specialized_accuracy", "current_load"):
            value = getattr(self, attr)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{attr} must be within [0, 1] for '{self.name}', got {value}")
        if self.cost_per_token < 0 or self.avg_response_time_ms < 0:
            raise ValueError(f"cost and latency must be >= 0 for '{self.name}'")
        object.__setattr__(self, "optimal_for", frozenset(TaskType(t) for t in self.optimal_for))
        if self.supported_tasks is not None:
            object.__setattr__(
                self, "supported_tasks", frozenset(TaskType(t) for t in self.supported_tasks)
            )

    def supports_task(self, task_type: TaskType) -> bool:
        return self.supported_tasks is None or task_type in self.supported_tasks

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        data = asdict(self)
        data["optimal_for"] = sorted(t.value for t in self.optimal_for)
        if self.supported_tasks is not None:
            data["supported_tasks"] = sorted(t.value for t in self.supported_tasks)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelCapabilities":
        """Create from dictionary"""
        return cls(**data)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the registry handed to one routing decision"""
    models: Mapping[str, ModelCapabilities]
    fallback_adjacency: Mapping[str, tuple]
    version: int

    def get(self, name: str) -> Optional[ModelCapabilities]:
        return self.models.get(name)

    def names(self) -> List[str]:
        return list(self.models.keys())


_CHAT_TASKS = frozenset(t for t in TaskType if t != TaskType.EMBED)

DEFAULT_MODELS: List[ModelCapabilities] = [
    ModelCapabilities(
        name="claude-3.5-sonnet",
        max_tokens=8000,
        supports_function=True,
        supports_specialized_language=True,
        supports_structured_output=True,
        avg_response_time_ms=4000,
        cost_per_token=0.00003,
        quality_score=0.95,
        specialized_accuracy=0.92,
        rate_limit_per_minute=200,
        current_load=0.3,
        optimal_for=frozenset({TaskType.ANALYZE, TaskType.EXTRACT, TaskType.GENERATE}),
        supported_tasks=_CHAT_TASKS,
        max_output_tokens=4000,
    ),
    ModelCapabilities(
        name="claude-3-haiku",
        max_tokens=4000,
        supports_function=True,
        supports_specialized_language=True,
        supports_structured_output=True,
        avg_response_time_ms=1500,
        cost_per_token=0.00001,
        quality_score=0.85,
        specialized_accuracy=0.88,
        rate_limit_per_minute=300,
        current_load=0.2,
        optimal_for=frozenset({TaskType.CLASSIFY, TaskType.EXTRACT}),
        supported_tasks=_CHAT_TASKS,
        max_output_tokens=4000,
    ),
    ModelCapabilities(
        name="gpt-4o",
        max_tokens=4000,
        supports_function=True,
        supports_specialized_language=True,
        supports_structured_output=True,
        avg_response_time_ms=3000,
        cost_per_token=0.00005,
        quality_score=0.92,
        specialized_accuracy=0.78,
        rate_limit_per_minute=150,
        current_load=0.4,
        optimal_for=frozenset({TaskType.CALCULATE, TaskType.ANALYZE, TaskType.GENERATE}),
        supported_tasks=_CHAT_TASKS,
    ),
    ModelCapabilities(
        name="voyage-large-2-instruct",
        max_tokens=8000,
        supports_function=False,
        supports_specialized_language=True,
        supports_structured_output=False,
        avg_response_time_ms=800,
        cost_per_token=0.000005,
        quality_score=0.90,
        specialized_accuracy=0.94,
        rate_limit_per_minute=500,
        current_load=0.1,
        optimal_for=frozenset({TaskType.EMBED}),
        supported_tasks=frozenset({TaskType.EMBED}),
    ),
]

# Models of similar capability, in fallback order
DEFAULT_FALLBACK_ADJACENCY: Dict[str, List[str]] = {
    "claude-3.5-sonnet": ["claude-3-haiku", "gpt-4o", "gpt-4-turbo"],
    "claude-3-haiku": ["claude-3.5-sonnet", "gpt-4o"],
    "gpt-4o": ["gpt-4-turbo", "claude-3.5-sonnet"],
    "gpt-4-turbo": ["gpt-4o", "claude-3.5-sonnet"],
    "voyage-large-2-instruct": ["text-embedding-3-large"],
    "text-embedding-3-large": ["voyage-large-2-instruct"],
}


class ModelRegistry:
    """
    Capability table for every backend the router can use

    Writes are copy-on-write: each change builds a new mapping, swaps it in
    under the lock and bumps `version`. Readers call `snapshot()` and work on
    an immutable view, so a routing decision never observes a half-applied
    update.
    """

    def __init__(
            self,
            models: Optional[Iterable[ModelCapabilities]] = None,
            fallback_adjacency: Optional[Dict[str, List[str]]] = None
    ):
        self._lock = threading.Lock()
        self._models: Dict[str, ModelCapabilities] = {}
        self._adjacency: Dict[str, tuple] = {}
        self._version = 0

        initial = DEFAULT_MODELS if models is None else list(models)
        for capabilities in initial:
            self._models[capabilities.name] = capabilities
        adjacency = DEFAULT_FALLBACK_ADJACENCY if fallback_adjacency is None else fallback_adjacency
        self._adjacency = {name: tuple(chain) for name, chain in adjacency.items()}
        logger.info(f"Model registry initialized with {len(self._models)} models")

    @classmethod
    def with_defaults(cls) -> "ModelRegistry":
        return cls()

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(
                models=MappingProxyType(dict(self._models)),
                fallback_adjacency=MappingProxyType(dict(self._adjacency)),
                version=self._version
            )

    # ================== Model Management ==================

    def register_model(self, capabilities: ModelCapabilities) -> ModelCapabilities:
        """
        Register or replace a model's capabilities

        Args:
            capabilities: ModelCapabilities instance

        Returns:
            The registered capabilities
        """
        with self._lock:
            models = dict(self._models)
            models[capabilities.name] = capabilities
            self._swap(models)
        logger.info(f"Registered capabilities for model: {capabilities.name}")
        return capabilities

    def unregister_model(self, name: str) -> bool:
        """
        Remove a model

        Returns:
            True if removed, False if not found
        """
        with self._lock:
            if name not in self._models:
                return False
            models = dict(self._models)
            del models[name]
            self._swap(models)
        logger.info(f"Unregistered model: {name}")
        return True

    def get_model(self, name: str) -> Optional[ModelCapabilities]:
        return self._models.get(name)

    def list_models(self, available_only: bool = False) -> List[ModelCapabilities]:
        models = list(self._models.values())
        if available_only:
            models = [m for m in models if m.is_available]
        return models

    def update_model(self, name: str, **changes: Any) -> ModelCapabilities:
        """
        Update selected fields of a model

        Args:
            name: Model name
            **changes: Fields to change (validated like a new registration)

        Returns:
            The updated capabilities

        Raises:
            ValueError: If the model is not registered or a value is invalid
        """
        with self._lock:
            current = self._models.get(name)
            if current is None:
                raise ValueError(f"Model '{name}' not found for update")
            updated = replace(current, **changes)
            models = dict(self._models)
            models[name] = updated
            self._swap(models)
        logger.debug(f"Model '{name}' updated: {sorted(changes)}")
        return updated

    def set_availability(self, name: str, is_available: bool) -> ModelCapabilities:
        model = self.update_model(name, is_available=is_available)
        logger.info(f"Model '{name}' marked {'available' if is_available else 'unavailable'}")
        return model

    def update_load(self, name: str, current_load: float) -> ModelCapabilities:
        return self.update_model(name, current_load=max(0.0, min(1.0, current_load)))

    def apply_observed_latency(self, name: str, observed_ms: float, weight: float = 0.3) -> Optional[ModelCapabilities]:
        """
        Blend an observed average latency into the static profile

        Returns:
            Updated capabilities, or None when the model is unknown
        """
        current = self._models.get(name)
        if current is None or observed_ms <= 0:
            return None
        blended = (1 - weight) * current.avg_response_time_ms + weight * observed_ms
        logger.info(
            f"Tuning '{name}' latency profile: {current.avg_response_time_ms:.0f}ms -> {blended:.0f}ms"
        )
        return self.update_model(name, avg_response_time_ms=round(blended, 1))

    def set_fallback_chain(self, name: str, chain: List[str]):
        with self._lock:
            adjacency = dict(self._adjacency)
            adjacency[name] = tuple(chain)
            self._adjacency = adjacency
            self._version += 1

    def get_fallback_chain(self, name: str) -> List[str]:
        return list(self._adjacency.get(name, ()))

    def _swap(self, models: Dict[str, ModelCapabilities]):
        self._models = models
        self._version += 1

    # ================== Import / Export ==================

    def export_models(self) -> Dict[str, Any]:
        return {
            "models": [m.to_dict() for m in self._models.values()],
            "fallback_adjacency": {k: list(v) for k, v in self._adjacency.items()},
        }

    def import_models(self, data: Dict[str, Any], overwrite: bool = False):
        """
        Import models exported by `export_models`

        Args:
            data: Exported mapping
            overwrite: If True, replace existing models with the same name
        """
        imported_count = 0
        skipped_count = 0
        for model_data in data.get("models", []):
            capabilities = ModelCapabilities.from_dict(model_data)
            if capabilities.name in self._models and not overwrite:
                logger.warning(f"Skipping existing model: {capabilities.name}")
                skipped_count += 1
                continue
            self.register_model(capabilities)
            imported_count += 1
        for name, chain in data.get("fallback_adjacency", {}).items():
            self.set_fallback_chain(name, chain)
        logger.info(f"Imported {imported_count} models, skipped {skipped_count}")


__all__ = [
    "ModelCapabilities",
    "RegistrySnapshot",
    "ModelRegistry",
    "DEFAULT_MODELS",
    "DEFAULT_FALLBACK_ADJACENCY",
]

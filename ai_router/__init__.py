"""
EE AI Router - request routing for Enterprise AI Gateway backends

This package analyzes incoming requests, scores the registered models on
cost, latency, quality and task fit, executes the request with fallbacks and
circuit breaking, and keeps rolling performance metrics.
"""

from ai_router.config import RouterConfig
from ai_router.context_analyzer import ContextAnalyzer
from ai_router.decision_cache import DecisionCache
from ai_router.exceptions import (
    RouterError,
    NoEligibleModel,
    ModelUnavailable,
    ExecutionError,
    ResponseValidationFailed,
    AllModelsFailed,
    BudgetExceeded,
    DeadlineExceeded,
)
from ai_router.executors import ExecutorTable
from ai_router.fallback_handler import CircuitBreaker, FallbackHandler, ResponseValidator
from ai_router.model_registry import ModelCapabilities, ModelRegistry
from ai_router.performance_monitor import PerformanceMonitor, PerformanceMetrics
from ai_router.router import AIRouter
from ai_router.routing_engine import RoutingEngine
from ai_router.schemas import (
    TaskType,
    Urgency,
    Priority,
    LanguageOptimization,
    ContextAnalysis,
    UserPreferences,
    InvocationParams,
    RoutingDecision,
    AIRequest,
    AIResponse,
    TokenUsage,
    ModelError,
)

__version__ = "0.1.0"

__all__ = [
    "AIRouter",
    "RouterConfig",
    "ContextAnalyzer",
    "RoutingEngine",
    "FallbackHandler",
    "CircuitBreaker",
    "ResponseValidator",
    "PerformanceMonitor",
    "PerformanceMetrics",
    "DecisionCache",
    "ExecutorTable",
    "ModelRegistry",
    "ModelCapabilities",
    "TaskType",
    "Urgency",
    "Priority",
    "LanguageOptimization",
    "ContextAnalysis",
    "UserPreferences",
    "InvocationParams",
    "RoutingDecision",
    "AIRequest",
    "AIResponse",
    "TokenUsage",
    "ModelError",
    "RouterError",
    "NoEligibleModel",
    "ModelUnavailable",
    "ExecutionError",
    "ResponseValidationFailed",
    "AllModelsFailed",
    "BudgetExceeded",
    "DeadlineExceeded",
]

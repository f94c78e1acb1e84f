"""
Error taxonomy for the AI router.

Every error surfaced to a caller is a RouterError carrying a stable code,
a human readable message and the ordered list of backends that were attempted.
"""

from typing import Dict, Any, List, Optional, Sequence


class RouterError(Exception):
    """Base class for all routing errors"""

    code = "ROUTER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        model: Optional[str] = None,
        attempted_models: Sequence[str] = (),
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.model = model
        self.attempted_models: List[str] = list(attempted_models)
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Structured form returned to callers"""
        return {
            "code": self.code,
            "message": self.message,
            "model": self.model,
            "attempted_models": list(self.attempted_models),
        }


class NoEligibleModel(RouterError):
    code = "NO_ELIGIBLE_MODEL"

    def __init__(self, task_type: str, reason: str = ""):
        message = f"No eligible model found for task type: {task_type}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.task_type = task_type


class ModelUnavailable(RouterError):
    code = "MODEL_UNAVAILABLE"

    def __init__(self, model: str, original_error: Optional[BaseException] = None):
        super().__init__(
            f"Model {model} is currently unavailable",
            model=model,
            original_error=original_error
        )


class ExecutionError(RouterError):
    code = "EXECUTION_ERROR"

    def __init__(self, model: str, original_error: BaseException):
        super().__init__(
            f"Execution failed on {model}: {original_error}",
            model=model,
            original_error=original_error
        )


class ResponseValidationFailed(RouterError):
    code = "RESPONSE_VALIDATION_FAILED"

    def __init__(self, model: str, reason: str):
        super().__init__(f"Invalid response from {model}: {reason}", model=model)
        self.reason = reason


class AllModelsFailed(RouterError):
    code = "ALL_MODELS_FAILED"

    def __init__(self, attempted_models: Sequence[str], errors: Optional[List[Any]] = None):
        super().__init__(
            f"All models failed: {', '.join(attempted_models)}",
            attempted_models=attempted_models
        )
        self.errors = list(errors or [])


class BudgetExceeded(RouterError):
    code = "BUDGET_EXCEEDED"

    def __init__(self, requested_cost: float, budget: float, model: Optional[str] = None):
        super().__init__(
            f"Request cost {requested_cost} exceeds budget {budget}",
            model=model
        )
        self.requested_cost = requested_cost
        self.budget = budget


class DeadlineExceeded(RouterError):
    code = "DEADLINE_EXCEEDED"

    def __init__(self, attempted_models: Sequence[str]):
        super().__init__(
            "Request deadline exceeded before a model could answer",
            attempted_models=attempted_models
        )


__all__ = [
    "RouterError",
    "NoEligibleModel",
    "ModelUnavailable",
    "ExecutionError",
    "ResponseValidationFailed",
    "AllModelsFailed",
    "BudgetExceeded",
    "DeadlineExceeded",
]

"""
Executor table

Backends are reached through one async callable per model id, registered at
startup. The router never builds backend payloads beyond InvocationParams.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ai_router.exceptions import ModelUnavailable
from ai_router.schemas import AIRequest, AIResponse, InvocationParams

logger = logging.getLogger(__name__)

Executor = Callable[[str, AIRequest, InvocationParams], Awaitable[AIResponse]]


class ExecutorTable:
    """Mapping of model id -> async executor"""

    def __init__(self, executors: Optional[Dict[str, Executor]] = None):
        self._executors: Dict[str, Executor] = dict(executors or {})

    def register(self, model: str, executor: Executor):
        """Register the executor for one model (one executor may serve a whole backend family)"""
        self._executors[model] = executor
        logger.info(f"Registered executor for model: {model}")

    def register_family(self, models: List[str], executor: Executor):
        for model in models:
            self.register(model, executor)

    def unregister(self, model: str) -> bool:
        return self._executors.pop(model, None) is not None

    def models(self) -> List[str]:
        return list(self._executors.keys())

    def __contains__(self, model: str) -> bool:
        return model in self._executors

    async def execute(self, model: str, request: AIRequest, params: InvocationParams) -> AIResponse:
        """
        Run a request on a model

        Raises:
            ModelUnavailable: If no executor is registered for the model
        """
        executor = self._executors.get(model)
        if executor is None:
            raise ModelUnavailable(model)
        response = await executor(model, request, params)
        if not response.model:
            response.model = model
        return response


__all__ = ["Executor", "ExecutorTable"]

import logging
from typing import Dict, Any, Optional

from ai_router.config import TracingConfig

logger = logging.getLogger(__name__)


class LangfuseTracer:
    """
    Best-effort mirror of routing events to Langfuse.

    The router works the same with or without Langfuse: the SDK is only
    imported when tracing is enabled and both keys are configured, and every
    emit swallows client errors after logging them.

    Events emitted by the router:
      - routing.decision: model selection for a request
      - routing.fallback: a fallback model answered
      - routing.failed: the request failed with a RouterError
    """

    def __init__(self, config: Optional[TracingConfig] = None, client: Optional[Any] = None):
        self.config = config or TracingConfig()
        self.lf_client = client
        self.enabled = client is not None

        if client is None and self.config.enable_langfuse:
            if not self.config.langfuse_public_key or not self.config.langfuse_secret_key:
                logger.warning("Langfuse keys not configured, routing tracing disabled")
                return
            try:
                from langfuse import Langfuse

                self.lf_client = Langfuse(
                    public_key=self.config.langfuse_public_key,
                    secret_key=self.config.langfuse_secret_key,
                    host=self.config.langfuse_host,
                )
                self.enabled = True
                logger.info(f"Langfuse client initialized for routing traces: {self.config.langfuse_host}")
            except Exception as e:
                self.lf_client = None
                logger.warning(f"Langfuse SDK not available or failed to initialize ({e}); continuing without it")

    def emit(self, event_type: str, payload: Dict[str, Any]) -> bool:
        """
        Send one event to Langfuse

        Returns:
            True if a client call was made without error
        """
        if not self.enabled or self.lf_client is None:
            return False
        try:
            # SDK v2 exposes `event`, v3 `create_event`; fall back to a bare trace
            if hasattr(self.lf_client, "create_event"):
                self.lf_client.create_event(name=event_type, metadata=payload)
            elif hasattr(self.lf_client, "event"):
                self.lf_client.event(name=event_type, metadata=payload)
            elif hasattr(self.lf_client, "trace"):
                self.lf_client.trace(name=event_type, metadata=payload)
            else:
                logger.debug(f"Langfuse client has no event API, dropping {event_type}")
                return False
            return True
        except Exception as e:
            logger.debug(f"Langfuse mirror failed (non-fatal): {e}")
            return False

    def flush(self):
        if self.lf_client is not None and hasattr(self.lf_client, "flush"):
            try:
                self.lf_client.flush()
            except Exception as e:
                logger.debug(f"Error flushing Langfuse: {e}")


__all__ = ["LangfuseTracer"]

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Dict, Any, Optional, Callable, FrozenSet, Iterable, Tuple

from ai_router.config import CacheConfig
from ai_router.schemas import ContextAnalysis, RoutingDecision, TaskType, UserPreferences

logger = logging.getLogger(__name__)

CONTENT_PREFIX_LENGTH = 100


class DecisionCache:
    """
    LRU + TTL cache of routing decisions

    Entries are stamped with the registry version and the set of open circuits
    they were computed against; a change in either turns them into misses.
    The cache is best effort: a miss only costs a fresh scoring pass.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or CacheConfig()
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[RoutingDecision, float, int, FrozenSet[str]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def fingerprint(
        context: ContextAnalysis,
        content: str,
        preferences: Optional[UserPreferences] = None
    ) -> str:
        """Stable key for the decision-relevant parts of a request"""
        parts = [
            context.task_type.value,
            context.complexity,
            context.urgency.value,
            context.language_optimization.value,
            context.content_size_tokens,
            (content or "")[:CONTENT_PREFIX_LENGTH],
            list(preferences.fingerprint()) if preferences else None,
        ]
        raw = json.dumps(parts, ensure_ascii=False, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def should_cache(self, context: ContextAnalysis) -> bool:
        return (
            self.config.enable_cache
            and context.complexity <= self.config.max_complexity
            and context.content_size_tokens < self.config.max_content_tokens
            and context.task_type != TaskType.GENERATE
        )

    def get(
        self,
        key: str,
        registry_version: int,
        blocked_models: Iterable[str] = ()
    ) -> Optional[RoutingDecision]:
        """
        Look up a decision

        Args:
            key: Fingerprint from `fingerprint`
            registry_version: Current registry version
            blocked_models: Models whose circuit is currently open

        Returns:
            The cached decision, or None on a miss
        """
        if not self.config.enable_cache:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            decision, expires_at, version, blocked = entry
            if (
                expires_at <= self.clock()
                or version != registry_version
                or blocked != frozenset(blocked_models)
            ):
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return decision

    def put(
        self,
        key: str,
        decision: RoutingDecision,
        registry_version: int,
        blocked_models: Iterable[str] = ()
    ):
        if not self.config.enable_cache:
            return
        with self._lock:
            self._entries[key] = (
                decision,
                self.clock() + self.config.ttl_seconds,
                registry_version,
                frozenset(blocked_models),
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.config.max_size:
                self._entries.popitem(last=False)

    def evict_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, (_, expires_at, _, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} expired routing decisions")
        return len(expired)

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        logger.info("Routing decision cache cleared")

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self),
            "max_size": self.config.max_size,
            "ttl_seconds": self.config.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
        }

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["DecisionCache"]

"""
Performance Monitor

Records latency, cost, confidence and routing outcomes for every request,
keeps bounded rolling histories per model, flags anomalies and derives
metrics, dashboards and optimization recommendations from them.
"""

import asyncio
import logging
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, List, Optional, Callable, Iterable, Set

from ai_router.config import MonitoringConfig, RoutingConfig
from ai_router.schemas import AIRequest, AIResponse, RoutingDecision, Urgency

logger = logging.getLogger(__name__)

HOUR = 60 * 60
COST_AVERAGE_WINDOW = 100
SUCCESS_CONFIDENCE = 0.5
UNDERUTILIZED_SHARE = 0.05
UNDERUTILIZED_MIN_REQUESTS = 100


class AnomalyType(str, Enum):
    SLOW_RESPONSE = "SLOW_RESPONSE"
    HIGH_COST = "HIGH_COST"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"


@dataclass
class Anomaly:
    type: AnomalyType
    model: str
    value: float
    threshold: float
    timestamp: float
    critical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class RequestRecord:
    """One entry of the global request log"""
    timestamp: float
    model: str
    selected_model: str
    processing_time_ms: float = 0.0
    cost: float = 0.0
    confidence: float = 0.0
    quality_score: float = 0.0
    fallback_used: bool = False
    success: bool = True
    task_type: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class ModelUsage:
    requests: int = 0
    total_time_ms: float = 0.0
    total_cost: float = 0.0
    successes: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.requests if self.requests else 0.0

    @property
    def avg_cost(self) -> float:
        return self.total_cost / self.requests if self.requests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.requests if self.requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "avg_time_ms": self.avg_time_ms,
            "avg_cost": self.avg_cost,
            "total_cost": self.total_cost,
            "success_rate": self.success_rate,
        }


@dataclass
class PerformanceMetrics:
    """Aggregated metrics over one time window"""
    request_count: int = 0
    failed_request_count: int = 0
    avg_response_time_ms: float = 0.0
    p50_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    total_cost: float = 0.0
    avg_cost_per_request: float = 0.0
    cost_by_model: Dict[str, float] = field(default_factory=dict)
    avg_confidence: float = 0.0
    success_rate: float = 1.0
    fallback_rate: float = 0.0
    model_usage: Dict[str, ModelUsage] = field(default_factory=dict)
    period_start: float = 0.0
    period_end: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["model_usage"] = {model: usage.to_dict() for model, usage in self.model_usage.items()}
        return data


def percentile(values: List[float], fraction: float) -> float:
    """Nearest-rank percentile on `floor(n * fraction)`; 0 for no data"""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, int(math.floor(len(ordered) * fraction)))
    return ordered[index]


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def calculate_trend(current: float, previous: Optional[float]) -> float:
    """Percent change from `previous`; 0 when there is no previous value"""
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)


class PerformanceMonitor:
    """
    Rolling per-request telemetry

    `record` is called once per successful request and never raises;
    `record_failure` counts requests that ended in a RouterError. All
    histories are fixed-capacity ring buffers.
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        target_latency_ms: Optional[Dict[Urgency, float]] = None,
        clock: Callable[[], float] = time.time,
        sink: Optional[Any] = None
    ):
        self.config = config or MonitoringConfig()
        self.target_latency_ms = dict(target_latency_ms or RoutingConfig().target_latency_ms)
        self.clock = clock
        self.sink = sink
        self._pending_writes: Set[asyncio.Future] = set()
        self._lock = threading.Lock()
        self._alert_handlers: List[Callable[[Anomaly], None]] = []
        self._init_histories()

    def _init_histories(self):
        size = self.config.history_size
        self._latency: Dict[str, deque] = {}
        self._cost: Dict[str, deque] = {}
        self._confidence: Dict[str, deque] = {}
        self._requests: deque = deque(maxlen=size * 10)
        self._anomalies: deque = deque(maxlen=size)

    def _history(self, table: Dict[str, deque], model: str) -> deque:
        if model not in table:
            table[model] = deque(maxlen=self.config.history_size)
        return table[model]

    def add_alert_handler(self, handler: Callable[[Anomaly], None]):
        """Register a callable invoked with every critical anomaly"""
        self._alert_handlers.append(handler)

    # ================== Recording ==================

    def record(
        self,
        request: AIRequest,
        response: AIResponse,
        decision: RoutingDecision
    ) -> Optional[float]:
        """
        Record a completed request

        Args:
            request: The executed request
            response: Final (enriched) response
            decision: Decision the request was executed with

        Returns:
            Composite quality score, or None when the sample was not recorded
        """
        if not self.config.enable_metrics:
            return None
        try:
            if self.config.sample_rate < 1.0 and random.random() >= self.config.sample_rate:
                return None

            now = self.clock()
            quality = self.quality_score(request, response)
            model = response.model
            fallback_used = response.fallback_used or model != decision.selected_model

            with self._lock:
                anomalies = self._detect_anomalies(response, now)
                self._history(self._latency, model).append((now, response.processing_time_ms))
                self._history(self._cost, model).append((now, response.cost))
                self._history(self._confidence, model).append((now, response.confidence))
                self._requests.append(RequestRecord(
                    timestamp=now,
                    model=model,
                    selected_model=decision.selected_model,
                    processing_time_ms=response.processing_time_ms,
                    cost=response.cost,
                    confidence=response.confidence,
                    quality_score=quality,
                    fallback_used=fallback_used,
                    task_type=request.context.task_type.value,
                ))
                self._anomalies.extend(anomalies)

            for anomaly in anomalies:
                self._report_anomaly(anomaly)

            if self.sink is not None:
                self._dispatch_to_sink({
                    "latency_ms": response.processing_time_ms,
                    "cost": response.cost,
                    "confidence": response.confidence,
                    "quality_score": quality,
                    f"{model}/latency_ms": response.processing_time_ms,
                })
            return quality
        except Exception as e:
            logger.error(f"Failed to record metrics: {e}")
            return None

    def _dispatch_to_sink(self, metrics: Dict[str, float]):
        """Hand a sample to the sink on a worker thread when an event loop is running"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_to_sink(metrics)
            return
        future = loop.run_in_executor(None, self._write_to_sink, metrics)
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    def _write_to_sink(self, metrics: Dict[str, float]):
        try:
            self.sink.log_request(metrics)
        except Exception as e:
            logger.warning(f"Metrics sink rejected a sample: {e}")

    async def drain_sink(self):
        """Wait for sink writes still in flight"""
        pending = list(self._pending_writes)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def record_failure(self, request: Optional[AIRequest], error: Exception):
        """Count a request that ended without a response"""
        if not self.config.enable_metrics:
            return
        try:
            attempted = list(getattr(error, "attempted_models", []) or [])
            model = getattr(error, "model", None) or (attempted[-1] if attempted else "")
            record = RequestRecord(
                timestamp=self.clock(),
                model=model,
                selected_model=attempted[0] if attempted else model,
                success=False,
                task_type=request.context.task_type.value if request else None,
                error_code=getattr(error, "code", type(error).__name__),
            )
            with self._lock:
                self._requests.append(record)
        except Exception as e:
            logger.error(f"Failed to record request failure: {e}")

    def quality_score(self, request: AIRequest, response: AIResponse) -> float:
        """Confidence adjusted for latency, fallback use and budget overrun"""
        score = response.confidence
        target = self.target_latency_ms.get(request.context.urgency, 5000.0)
        if response.processing_time_ms <= target:
            score += 0.1
        if not response.fallback_used:
            score += 0.1
        if response.cost > request.context.cost_budget:
            score -= 0.2
        return max(0.0, min(1.0, score))

    # ================== Anomalies ==================

    def _detect_anomalies(self, response: AIResponse, now: float) -> List[Anomaly]:
        """Compare a response against the model's trailing history (caller holds the lock)"""
        anomalies = []
        model = response.model

        latencies = [value for _, value in self._latency.get(model, ())]
        if len(latencies) >= self.config.min_anomaly_samples:
            threshold = _mean(latencies) * self.config.latency_anomaly_factor
            if response.processing_time_ms > threshold:
                anomalies.append(Anomaly(
                    type=AnomalyType.SLOW_RESPONSE,
                    model=model,
                    value=response.processing_time_ms,
                    threshold=threshold,
                    timestamp=now,
                    critical=response.processing_time_ms > self.config.critical_latency_ms,
                ))

        costs = [value for _, value in self._cost.get(model, ())][-COST_AVERAGE_WINDOW:]
        average_cost = _mean(costs)
        if average_cost > 0:
            threshold = average_cost * self.config.cost_anomaly_factor
            if response.cost > threshold:
                anomalies.append(Anomaly(AnomalyType.HIGH_COST, model, response.cost, threshold, now))

        if response.confidence < self.config.confidence_floor:
            anomalies.append(Anomaly(
                AnomalyType.LOW_CONFIDENCE, model, response.confidence, self.config.confidence_floor, now
            ))
        return anomalies

    def _report_anomaly(self, anomaly: Anomaly):
        logger.warning(
            f"Anomaly detected: {anomaly.type.value} on {anomaly.model} "
            f"(value={anomaly.value:.4g}, threshold={anomaly.threshold:.4g})"
        )
        if not anomaly.critical:
            return
        logger.critical(f"Critical alert: {anomaly.type.value} on {anomaly.model} ({anomaly.value:.0f}ms)")
        for handler in list(self._alert_handlers):
            try:
                handler(anomaly)
            except Exception as e:
                logger.error(f"Alert handler failed: {e}")

    def recent_anomalies(self, hours: float = 24) -> List[Anomaly]:
        since = self.clock() - hours * HOUR
        with self._lock:
            return [a for a in self._anomalies if a.timestamp >= since]

    # ================== Queries ==================

    def percentiles(self, model: str) -> Dict[str, float]:
        with self._lock:
            latencies = [value for _, value in self._latency.get(model, ())]
        return {
            "p50": percentile(latencies, 0.50),
            "p95": percentile(latencies, 0.95),
            "p99": percentile(latencies, 0.99),
        }

    def latency_averages(self) -> Dict[str, float]:
        """Average observed latency per model over its rolling history"""
        with self._lock:
            return {
                model: _mean(value for _, value in history)
                for model, history in self._latency.items()
                if history
            }

    def _records_between(self, start: float, end: float) -> List[RequestRecord]:
        with self._lock:
            return [r for r in self._requests if start <= r.timestamp <= end]

    def _aggregate(self, records: List[RequestRecord], start: float, end: float) -> PerformanceMetrics:
        successes = [r for r in records if r.success]
        failures = len(records) - len(successes)
        latencies = [r.processing_time_ms for r in successes]

        cost_by_model: Dict[str, float] = {}
        usage: Dict[str, ModelUsage] = {}
        for r in successes:
            cost_by_model[r.model] = cost_by_model.get(r.model, 0.0) + r.cost
            model_usage = usage.setdefault(r.model, ModelUsage())
            model_usage.requests += 1
            model_usage.total_time_ms += r.processing_time_ms
            model_usage.total_cost += r.cost
            if r.confidence >= SUCCESS_CONFIDENCE:
                model_usage.successes += 1

        total_cost = sum(r.cost for r in successes)
        return PerformanceMetrics(
            request_count=len(records),
            failed_request_count=failures,
            avg_response_time_ms=_mean(latencies),
            p50_response_time_ms=percentile(latencies, 0.50),
            p95_response_time_ms=percentile(latencies, 0.95),
            p99_response_time_ms=percentile(latencies, 0.99),
            total_cost=total_cost,
            avg_cost_per_request=total_cost / len(successes) if successes else 0.0,
            cost_by_model=cost_by_model,
            avg_confidence=_mean(r.confidence for r in successes),
            success_rate=len(successes) / len(records) if records else 1.0,
            fallback_rate=(sum(1 for r in successes if r.fallback_used) / len(successes)) if successes else 0.0,
            model_usage=usage,
            period_start=start,
            period_end=end,
        )

    def current_metrics(self, window_seconds: float = HOUR) -> PerformanceMetrics:
        end = self.clock()
        start = end - window_seconds
        return self._aggregate(self._records_between(start, end), start, end)

    def historical_metrics(self, hours: int = 24) -> List[PerformanceMetrics]:
        """Hourly buckets, oldest first; the last bucket ends now"""
        now = self.clock()
        with self._lock:
            records = list(self._requests)
        buckets = []
        for i in range(hours, 0, -1):
            end = now - (i - 1) * HOUR
            start = end - HOUR
            bucket = [r for r in records if start < r.timestamp <= end]
            buckets.append(self._aggregate(bucket, start, end))
        return buckets

    def dashboard(self) -> Dict[str, Any]:
        current = self.current_metrics()
        previous = self.historical_metrics(2)[0]

        by_model = []
        for model, usage in current.model_usage.items():
            by_model.append({
                "model": model,
                "requests": usage.requests,
                "avg_time_ms": usage.avg_time_ms,
                "avg_cost": usage.avg_cost,
                "success_rate": usage.success_rate,
                "cost_efficiency": usage.avg_cost / usage.avg_time_ms * 1000 if usage.avg_time_ms else 0.0,
                **self.percentiles(model),
            })

        return {
            "overview": {
                "requests_per_hour": current.request_count,
                "avg_response_time_ms": current.avg_response_time_ms,
                "total_cost_per_hour": current.total_cost,
                "success_rate": current.success_rate,
                "fallback_rate": current.fallback_rate,
                "trends": {
                    "requests": calculate_trend(current.request_count, previous.request_count),
                    "response_time": calculate_trend(current.avg_response_time_ms, previous.avg_response_time_ms),
                    "cost": calculate_trend(current.total_cost, previous.total_cost),
                },
            },
            "by_model": by_model,
            "trends": [
                {
                    "timestamp": bucket.period_end,
                    "requests": bucket.request_count,
                    "response_time_ms": bucket.avg_response_time_ms,
                    "cost": bucket.total_cost,
                    "quality": bucket.avg_confidence,
                }
                for bucket in self.historical_metrics(24)
            ],
            "alerts": [a.to_dict() for a in self.recent_anomalies(24)],
        }

    def recommendations(self, model_names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """
        Threshold rules over the last hour

        Args:
            model_names: Registered models, used to detect unused ones

        Returns:
            List of {type, priority, description, expected_impact}, possibly with
            suggested_preferences
        """
        metrics = self.current_metrics()
        recommendations = []

        if metrics.total_cost > self.config.hourly_cost_limit:
            recommendations.append({
                "type": "COST_OPTIMIZATION",
                "priority": "high",
                "description": (
                    f"Hourly cost {metrics.total_cost:.2f} above {self.config.hourly_cost_limit:.2f}. "
                    "Bias simple tasks toward cheaper models."
                ),
                "expected_impact": "-30% estimated cost",
                "suggested_preferences": {"priority": "cost"},
            })
        if metrics.avg_response_time_ms > self.config.slow_response_ms:
            recommendations.append({
                "type": "PERFORMANCE_OPTIMIZATION",
                "priority": "medium",
                "description": (
                    f"Average response time {metrics.avg_response_time_ms:.0f}ms. "
                    "Review complexity thresholds or favor faster models."
                ),
                "expected_impact": "-40% response time",
                "suggested_preferences": {"priority": "speed"},
            })
        if metrics.fallback_rate > self.config.fallback_rate_limit:
            recommendations.append({
                "type": "RELIABILITY_OPTIMIZATION",
                "priority": "high",
                "description": (
                    f"Fallback rate {metrics.fallback_rate:.0%}. Check availability of primary models."
                ),
                "expected_impact": "+20% reliability",
            })
        if metrics.request_count - metrics.failed_request_count > 0 and \
                metrics.avg_confidence < self.config.low_confidence_limit:
            recommendations.append({
                "type": "QUALITY_OPTIMIZATION",
                "priority": "medium",
                "description": (
                    f"Average confidence {metrics.avg_confidence:.2f}. Favor higher quality models."
                ),
                "expected_impact": "+15% confidence",
                "suggested_preferences": {"priority": "quality"},
            })

        served = metrics.request_count - metrics.failed_request_count
        if served > UNDERUTILIZED_MIN_REQUESTS:
            models = set(model_names or ()) | set(metrics.model_usage)
            for model in sorted(models):
                usage = metrics.model_usage.get(model)
                share = usage.requests / served if usage else 0.0
                if share < UNDERUTILIZED_SHARE:
                    recommendations.append({
                        "type": "UNDERUTILIZED_MODEL",
                        "priority": "low",
                        "description": f"{model} served {share:.1%} of {served} requests.",
                        "expected_impact": "Simpler fallback chains",
                        "model": model,
                    })
        return recommendations

    # ================== Maintenance ==================

    def prune(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop samples older than `max_age_seconds` (default: retention_days)"""
        if max_age_seconds is None:
            max_age_seconds = self.config.retention_days * 24 * HOUR
        cutoff = self.clock() - max_age_seconds
        removed = 0
        with self._lock:
            for table in (self._latency, self._cost, self._confidence):
                for model in list(table):
                    kept = [s for s in table[model] if s[0] >= cutoff]
                    removed += len(table[model]) - len(kept)
                    table[model] = deque(kept, maxlen=self.config.history_size)
            kept_requests = [r for r in self._requests if r.timestamp >= cutoff]
            removed += len(self._requests) - len(kept_requests)
            self._requests = deque(kept_requests, maxlen=self._requests.maxlen)
            self._anomalies = deque(
                (a for a in self._anomalies if a.timestamp >= cutoff), maxlen=self._anomalies.maxlen
            )
        if removed:
            logger.info(f"Pruned {removed} metric samples older than {max_age_seconds:.0f}s")
        return removed

    def reset(self):
        with self._lock:
            self._init_histories()
        logger.info("Performance metrics reset")


__all__ = [
    "AnomalyType",
    "Anomaly",
    "RequestRecord",
    "ModelUsage",
    "PerformanceMetrics",
    "PerformanceMonitor",
    "percentile",
    "calculate_trend",
]

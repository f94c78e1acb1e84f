import os
import time
import logging
import threading
from typing import Dict, Optional, Any

try:
    import mlflow
    from mlflow.tracking import MlflowClient
except ImportError:
    raise ImportError("mlflow is required for the MLflowMetricsSink. Please install it with 'pip install mlflow'.")

logger = logging.getLogger(__name__)


class MLflowMetricsSink:
    """
    Mirrors per-request routing metrics into an MLflow run

    One run is opened lazily in the configured experiment and every recorded
    request logs its metrics at the next step. Tracking failures are logged
    and never propagate to the request path.
    """

    def __init__(
            self,
            tracking_uri: Optional[str] = None,
            experiment_name: str = "ai-router",
            run_name: str = "ai-router-metrics",
            client: Optional[Any] = None
    ):
        self.tracking_uri = tracking_uri or os.getenv("MLFLOW_TRACKING_URI", "http://localhost:5000")
        self.experiment_name = experiment_name
        self.run_name = run_name
        if client is None:
            mlflow.set_tracking_uri(self.tracking_uri)
            client = MlflowClient(tracking_uri=self.tracking_uri)
            logger.info(f"Connected to MLflow Tracking URI: {self.tracking_uri}")
        self.client = client
        self._run_id: Optional[str] = None
        self._step = 0
        self._lock = threading.Lock()

    def _ensure_run(self) -> str:
        if self._run_id is None:
            experiment = self.client.get_experiment_by_name(self.experiment_name)
            if experiment is not None:
                experiment_id = experiment.experiment_id
            else:
                experiment_id = self.client.create_experiment(self.experiment_name)
                logger.info(f"Created MLflow experiment '{self.experiment_name}'")
            run = self.client.create_run(experiment_id, tags={"mlflow.runName": self.run_name})
            self._run_id = run.info.run_id
        return self._run_id

    def log_request(self, metrics: Dict[str, float]) -> bool:
        """
        Log one request's metrics

        Args:
            metrics: Metric name -> value

        Returns:
            True on success, False if MLflow rejected the call
        """
        try:
            with self._lock:
                run_id = self._ensure_run()
                step = self._step
                self._step += 1
            timestamp = int(time.time() * 1000)
            for key, value in metrics.items():
                self.client.log_metric(run_id, key, float(value), timestamp=timestamp, step=step)
            return True
        except Exception as e:
            logger.warning(f"Failed to log routing metrics to MLflow: {e}")
            return False

    def close(self):
        if self._run_id is None:
            return
        try:
            self.client.set_terminated(self._run_id)
        except Exception as e:
            logger.warning(f"Failed to close MLflow run {self._run_id}: {e}")
        finally:
            self._run_id = None


__all__ = ["MLflowMetricsSink"]

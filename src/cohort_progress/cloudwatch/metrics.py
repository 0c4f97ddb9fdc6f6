import logging

from aws_embedded_metrics import metric_scope

_LOGGER = logging.getLogger(__name__)

PROGRESSION_NAMESPACE = "CohortProgress"

TOPIC_COMPLETED = "TopicCompleted"
COINS_AWARDED = "CoinsAwarded"
WEEK_UNLOCKED = "WeekUnlocked"
UNLOCK_EVALUATION_FAILED = "UnlockEvaluationFailed"


class MetricsManager:
    """Queues progression metrics during a request and emits them as embedded metric format logs."""

    def __init__(self, namespace: str = PROGRESSION_NAMESPACE):
        self._namespace = namespace
        self._metrics: dict[str, tuple[float, str]] = {}
        self._dimensions: dict[str, str] = {}

    def set_dimension(self, name: str, value: str):
        self._dimensions[name] = value

    def put_metric(self, name: str, value: float, unit: str = "Count"):
        """Queues a metric. Repeated calls with the same name within one request are summed."""
        previous, _ = self._metrics.get(name, (0, unit))
        self._metrics[name] = (previous + value, unit)
        _LOGGER.info(f"Queued metric '{name}' with value {value} in namespace '{self._namespace}'")

    @property
    def pending(self) -> dict[str, tuple[float, str]]:
        return dict(self._metrics)

    @metric_scope
    def flush(self, metrics):
        """Emits all queued metrics to CloudWatch Logs."""
        if not self._metrics:
            return
        metrics.set_namespace(self._namespace)
        if self._dimensions:
            metrics.put_dimensions(dict(self._dimensions))
        for name, (value, unit) in self._metrics.items():
            metrics.put_metric(name, value, unit)

        _LOGGER.info(f"Flushed {len(self._metrics)} metrics to namespace '{self._namespace}'.")
        self._metrics = {}

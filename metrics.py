import json
import time
from typing import Callable, Dict, Optional

from logging_config import METRICS_LOGGER_NAME, get_logger

logger = get_logger(__name__)
metrics_logger = get_logger(METRICS_LOGGER_NAME)


def _log_sink(document: dict):
    metrics_logger.info(json.dumps(document))


class MetricsEmitter:
    """Emits measurements as CloudWatch Embedded Metric Format log lines.

    Every line carries the `Stage` dimension plus any custom dimensions. The
    external metrics pipeline parses stdout; nothing is acknowledged back.
    """

    def __init__(self, namespace: str, stage: str, sink: Optional[Callable[[dict], None]] = None):
        self.namespace = f"{namespace}/{stage}"
        self.stage = stage
        self.sink = sink or _log_sink

    def build_document(self, metric_name: str, value: float, unit: str, dimensions: Optional[Dict[str, str]] = None) -> dict:
        dimension_keys = ["Stage"]
        document = {
            "_aws": {
                "Timestamp": int(time.time() * 1000),
                "CloudWatchMetrics": [{
                    "Namespace": self.namespace,
                    "Dimensions": [dimension_keys],
                    "Metrics": [{"Name": metric_name, "Unit": unit}],
                }],
            },
            "Stage": self.stage,
            metric_name: value,
        }
        for key, dim_value in (dimensions or {}).items():
            document[key] = dim_value
            dimension_keys.append(key)
        return document

    def emit(self, metric_name: str, value: float, unit: str, dimensions: Optional[Dict[str, str]] = None):
        try:
            self.sink(self.build_document(metric_name, float(value), unit, dimensions))
        except Exception as e:
            # A broken metrics sink never fails the operation being measured
            logger.error(f"Failed to emit metric {metric_name}: {e}", exc_info=True)
            return
        logger.debug(f"Emitted metric: {metric_name} = {value}")

    def emit_count(self, metric_name: str, value: float, dimensions: Optional[Dict[str, str]] = None):
        self.emit(metric_name, value, "Count", dimensions)

    def emit_gauge(self, metric_name: str, value: float, dimensions: Optional[Dict[str, str]] = None):
        self.emit(metric_name, value, "None", dimensions)

    def emit_duration_ms(self, metric_name: str, duration_ms: float, dimensions: Optional[Dict[str, str]] = None):
        self.emit(metric_name, duration_ms, "Milliseconds", dimensions)

    def emit_message_sent(self, room_id: str, message_length: int):
        dimensions = {"RoomId": room_id}
        self.emit_count("MessagesPosted", 1, dimensions)
        self.emit_gauge("MessageLength", message_length, dimensions)

    def emit_connection_event(self, event_type: str, room_id: str, total_connections: Optional[int] = None):
        dimensions = {"EventType": event_type, "RoomId": room_id}
        self.emit_count("ConnectionEvents", 1, dimensions)
        if total_connections is not None:
            self.emit_gauge("ActiveConnections", total_connections, dimensions)

    def emit_message_broadcast(self, room_id: str, attempts: int, successes: int):
        dimensions = {"RoomId": room_id}
        self.emit_count("BroadcastAttempts", attempts, dimensions)
        self.emit_count("BroadcastSuccesses", successes, dimensions)
        self.emit_count("BroadcastFailures", attempts - successes, dimensions)

    def emit_error(self, metric_name: str, room_id: str, error_type: str = "DatabaseError"):
        self.emit_count(metric_name, 1, {"ErrorType": error_type, "RoomId": room_id})

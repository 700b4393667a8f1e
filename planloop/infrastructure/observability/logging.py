import structlog
import logging
import sys
from typing import Dict, Any, Optional, Tuple
from datetime import datetime

BOUND_IDS = ("thread_id", "run_id", "agent_id")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "planloop"
) -> None:
    """Route structlog through stdlib logging with thread-aware context"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_service_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound thread and run identifiers onto every entry"""

    event_dict.setdefault("timestamp", datetime.utcnow().isoformat())
    bound = structlog.contextvars.get_contextvars()
    for key in BOUND_IDS:
        if key in bound:
            event_dict.setdefault(key, bound[key])
    return event_dict


class OrchestrationLogger:
    """Structured events emitted by graph nodes, the router and the tool executor"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def node_started(self, node: str, graph_step: int, step_index: int, thread_id: Optional[str] = None):
        self.logger.info("node_started", node=node, graph_step=graph_step, step_index=step_index, thread_id=thread_id)

    def routed(self, source: Optional[str], target: str, condition: str, **state_summary):
        self.logger.info("route_selected", source=source, target=target, condition=condition, **state_summary)

    def tool_finished(
        self,
        tool_name: str,
        args_preview: str,
        duration_ms: Optional[float] = None,
        output_chars: Optional[int] = None,
        truncated: bool = False,
        error: Optional[str] = None
    ):
        log = self.logger.warning if error else self.logger.info
        log(
            "tool_finished",
            tool_name=tool_name,
            args=args_preview,
            duration_ms=duration_ms,
            output_chars=output_chars,
            truncated=truncated,
            success=error is None,
            error=error,
        )


agent_logger = OrchestrationLogger("planloop")


class MetricsCollector:
    """In-process counters and latency aggregates, keyed by name and tags"""

    def __init__(self):
        self.counters: Dict[Tuple[str, Tuple], int] = {}
        self.latencies: Dict[Tuple[str, Tuple], Dict[str, float]] = {}

    @staticmethod
    def _key(name: str, tags: Optional[Dict[str, str]]) -> Tuple[str, Tuple]:
        return name, tuple(sorted((tags or {}).items()))

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        entry = self.latencies.setdefault(
            self._key(operation, tags), {"count": 0, "sum": 0.0, "min": duration_ms, "max": duration_ms}
        )
        entry["count"] += 1
        entry["sum"] += duration_ms
        entry["min"] = min(entry["min"], duration_ms)
        entry["max"] = max(entry["max"], duration_ms)
        agent_logger.logger.debug("latency_recorded", operation=operation, duration_ms=duration_ms, tags=tags or {})

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        key = self._key(name, tags)
        self.counters[key] = self.counters.get(key, 0) + value

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Aggregate across tags: counters summed, latencies as count/avg/min/max"""

        summary: Dict[str, Any] = {}
        for (name, _), value in self.counters.items():
            summary[name] = summary.get(name, 0) + value

        merged: Dict[str, Dict[str, float]] = {}
        for (operation, _), entry in self.latencies.items():
            total = merged.setdefault(operation, {"count": 0, "sum": 0.0, "min": entry["min"], "max": entry["max"]})
            total["count"] += entry["count"]
            total["sum"] += entry["sum"]
            total["min"] = min(total["min"], entry["min"])
            total["max"] = max(total["max"], entry["max"])
        for operation, total in merged.items():
            summary[f"latency.{operation}"] = {
                "count": total["count"],
                "avg": total["sum"] / total["count"],
                "min": total["min"],
                "max": total["max"],
            }
        return summary

    def by_tag(self, name: str) -> Dict[Tuple, int]:
        """Counter values for one name, split by tag set"""
        return {tags: value for (key, tags), value in self.counters.items() if key == name}


metrics = MetricsCollector()

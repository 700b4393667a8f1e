from typing import Any, List
import os

from pydantic import BaseModel

from planloop.infrastructure.observability.langfuse_tracing import tracing_callbacks
from planloop.infrastructure.observability.logging import setup_logging


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class OrchestratorSettings(BaseModel):
    """Process-wide settings read from the environment"""
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "planloop"
    langfuse_enabled: bool = False

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(
            log_level=os.getenv("PLANLOOP_LOG_LEVEL", "INFO"),
            log_format=os.getenv("PLANLOOP_LOG_FORMAT", "json"),
            service_name=os.getenv("PLANLOOP_SERVICE_NAME", "planloop"),
            langfuse_enabled=_flag("LANGFUSE_ENABLED"),
        )

    def configure_logging(self) -> None:
        setup_logging(self.log_level, self.log_format, self.service_name)

    def callbacks(self) -> List[Any]:
        """Tracing callbacks for orchestrator runs"""
        return tracing_callbacks(self.langfuse_enabled)

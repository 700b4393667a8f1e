# Langfuse integration
from typing import Any, List

import structlog

logger = structlog.get_logger(__name__)


class LangfuseTracing:
    """Langfuse callback handler for graph runs

    Langfuse is imported on construction so the module loads without
    LANGFUSE_* credentials in the environment.
    """

    def __init__(self):
        from langfuse.langchain import CallbackHandler
        self.handler = CallbackHandler()

    def as_callback(self) -> Any:
        return self.handler


def tracing_callbacks(enabled: bool) -> List[Any]:
    """Callbacks to attach to graph runs"""

    if not enabled:
        return []
    tracing = LangfuseTracing()
    logger.info("Langfuse tracing enabled")
    return [tracing.as_callback()]

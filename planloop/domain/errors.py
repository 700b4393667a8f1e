from typing import Optional


class PlanloopError(Exception):
    """Base error for the orchestration core"""


class ConfigurationError(PlanloopError):
    """Missing or invalid agent configuration"""


class ToolRegistryError(PlanloopError):
    """Tool registry fault"""


class ToolNotFoundError(ToolRegistryError):
    """A model requested a tool that is not registered"""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' is not registered")
        self.tool_name = tool_name


class ToolExecutionError(PlanloopError):
    """A registered tool failed or timed out"""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ModelInvocationError(PlanloopError):
    """Language model call failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ContextLimitExceededError(ModelInvocationError):
    """Prompt exceeded the model's context or token limit"""


class ThreadBusyError(PlanloopError):
    """An invocation is already running on this thread"""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' already has an active invocation")
        self.thread_id = thread_id


class ThreadNotSuspendedError(PlanloopError):
    """Resume was requested for a thread that is not waiting on input"""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' is not suspended")
        self.thread_id = thread_id


class ThreadSuspendedError(PlanloopError):
    """New input was sent to a thread that is waiting for a resume"""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' is suspended; resume it instead")
        self.thread_id = thread_id


class StaleCheckpointError(PlanloopError):
    """Resume targeted a checkpoint that is no longer the latest"""

    def __init__(self, thread_id: str, checkpoint_id: str, latest_id: Optional[str]):
        super().__init__(
            f"Checkpoint '{checkpoint_id}' of thread '{thread_id}' was superseded by '{latest_id}'"
        )
        self.thread_id = thread_id
        self.checkpoint_id = checkpoint_id
        self.latest_id = latest_id


CONTEXT_LIMIT_MARKERS = (
    "token limit",
    "tokens exceed",
    "context length",
    "prompt is too long",
    "maximum context length",
)


def is_context_limit_error(error: BaseException) -> bool:
    """Check whether an error reports context or token exhaustion"""

    if isinstance(error, ContextLimitExceededError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in CONTEXT_LIMIT_MARKERS)

from planloop.config import OrchestratorSettings
from planloop.domain.models.agent_config import AgentConfig, AgentMode, GraphLimits, MemorySettings
from planloop.domain.models.agent_state import ThreadStatus
from planloop.domain.models.events import Checkpoint, ResumeCommand, StreamEvent
from planloop.domain.orchestration.core.main_agent import AgentOrchestrator

__all__ = [
    "AgentConfig",
    "AgentMode",
    "AgentOrchestrator",
    "Checkpoint",
    "GraphLimits",
    "MemorySettings",
    "OrchestratorSettings",
    "ResumeCommand",
    "StreamEvent",
    "ThreadStatus",
]

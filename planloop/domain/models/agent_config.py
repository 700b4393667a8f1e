from typing import Dict, Any, Optional
from pydantic import BaseModel, Field, ValidationError
from enum import Enum

from planloop.domain.errors import ConfigurationError


class AgentMode(str, Enum):
    """How much the agent acts without a human"""
    INTERACTIVE = "interactive"
    AUTONOMOUS = "autonomous"
    HYBRID = "hybrid"


class LtmRetrievalPolicy(str, Enum):
    """Transition at which long-term memories are retrieved"""
    ON_PLANNING = "on_planning"
    ON_VALIDATION = "on_validation"


class GraphLimits(BaseModel):
    """Hard ceilings and timeouts for one thread"""
    max_graph_steps: int = Field(default=100, gt=0, description="Node executions allowed over a thread's lifetime")
    max_plan_retries: int = Field(default=3, ge=0, description="Re-plans allowed after validator rejections")
    max_step_retries: int = Field(default=3, ge=0, description="Failed verifications before a step is failed")
    context_iterations: int = Field(default=7, gt=0, description="Executor iterations kept in the context window")
    tool_output_budget: int = Field(default=5000, gt=0, description="Characters kept from one tool result")
    tool_timeout: float = Field(default=30.0, gt=0, description="Seconds before a tool call is abandoned")
    model_timeout: float = Field(default=45.0, gt=0, description="Seconds before a model call is abandoned")
    plan_validation_enabled: bool = True
    human_in_the_loop: bool = False
    stream_tokens: bool = True


class MemorySettings(BaseModel):
    """Short and long term memory settings"""
    short_term_memory: int = Field(default=7, gt=0, description="STM capacity")
    memory_size: int = Field(default=20, gt=0, description="LTM entries retrieved per query")
    ltm_enabled: bool = True
    ltm_retrieval: LtmRetrievalPolicy = Field(default=LtmRetrievalPolicy.ON_PLANNING)


class AgentConfig(BaseModel):
    """Configuration for one agent"""
    id: str = Field(description="Agent identifier")
    name: str = Field(description="Display name")
    persona: str = Field(default="You are a careful assistant that completes tasks step by step.")
    mode: AgentMode = Field(default=AgentMode.AUTONOMOUS)
    limits: GraphLimits = Field(default_factory=GraphLimits)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def allows_human_input(self) -> bool:
        return self.limits.human_in_the_loop or self.mode == AgentMode.HYBRID

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "AgentConfig":
        """Validate a raw config blob, raising ConfigurationError on bad input"""

        if not data:
            raise ConfigurationError("Agent configuration is empty")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid agent configuration: {e}") from e

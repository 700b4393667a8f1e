from typing import Dict, Any, List, Optional, Annotated, NotRequired, TypedDict
from enum import Enum
import operator
import uuid

from langchain_core.messages import BaseMessage


class AgentRole(str, Enum):
    """Node that produced the last transition"""
    USER = "user"
    PLANNER = "planner"
    PLAN_VALIDATOR = "planner_validator"
    EXECUTOR = "executor"
    TOOLS = "tools"
    EXEC_VERIFIER = "exec_validator"
    HUMAN = "human"
    MODEL_SELECTOR = "model_selector"


class StepStatus(str, Enum):
    """Plan step status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, Enum):
    """How a step is expected to be carried out"""
    MESSAGE = "message"
    TOOLS = "tools"
    HUMAN_IN_THE_LOOP = "human_in_the_loop"


class ThreadStatus(str, Enum):
    """Lifecycle status of a conversation thread"""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_MARKERS = ("FINAL ANSWER", "PLAN_COMPLETED")
REPLAN_MARKER = "REQUEST_REPLAN"


class Step(TypedDict):
    """One unit of work within a plan"""
    number: int
    name: str
    description: str
    type: str
    status: str
    result: Optional[str]


class Plan(TypedDict):
    """Ordered steps produced by the planner"""
    id: str
    summary: str
    steps: List[Step]


class MemoryItem(TypedDict):
    """Immutable memory entry"""
    id: str
    content: str
    source_task_id: str
    timestamp: str
    similarity: NotRequired[float]


class Memories(TypedDict):
    """Short-term buffer and retrieved long-term entries"""
    stm: List[MemoryItem]
    ltm: List[MemoryItem]


class GraphState(TypedDict):
    """State carried between orchestration nodes"""
    messages: Annotated[List[BaseMessage], operator.add]
    user_request: str
    plan: Plan
    current_step_index: int
    retry: int
    last_agent: str
    current_graph_step: int
    memories: Memories


def empty_plan() -> Plan:
    return {"id": "", "summary": "", "steps": []}


def new_plan(summary: str, steps: List[Step]) -> Plan:
    return {"id": str(uuid.uuid4()), "summary": summary, "steps": steps}


def new_step(number: int, name: str, description: str, step_type: str = StepType.MESSAGE.value) -> Step:
    return {
        "number": number,
        "name": name,
        "description": description,
        "type": step_type,
        "status": StepStatus.PENDING.value,
        "result": None,
    }


def initial_state(user_request: str, message: BaseMessage) -> Dict[str, Any]:
    """Full state for the first invocation of a thread"""

    return {
        "messages": [message],
        "user_request": user_request,
        "plan": empty_plan(),
        "current_step_index": 0,
        "retry": 0,
        "last_agent": AgentRole.USER.value,
        "current_graph_step": 0,
        "memories": {"stm": [], "ltm": []},
    }


def follow_up_state(user_request: str, message: BaseMessage) -> Dict[str, Any]:
    """Delta for a new request on an existing thread; memories and the step counter carry over"""

    return {
        "messages": [message],
        "user_request": user_request,
        "plan": empty_plan(),
        "current_step_index": 0,
        "retry": 0,
        "last_agent": AgentRole.USER.value,
    }


def current_step(state: GraphState) -> Optional[Step]:
    """Step at current_step_index, or None once the plan is exhausted"""

    steps = state["plan"]["steps"]
    index = state["current_step_index"]
    if 0 <= index < len(steps):
        return steps[index]
    return None


def replace_step(plan: Plan, index: int, **changes: Any) -> Plan:
    """Return a copy of the plan with one step updated"""

    steps = [dict(step) for step in plan["steps"]]
    steps[index].update(changes)
    return {"id": plan["id"], "summary": plan["summary"], "steps": steps}


def is_plan_failed(plan: Plan) -> bool:
    return any(step["status"] == StepStatus.FAILED for step in plan["steps"])


def is_plan_completed(plan: Plan) -> bool:
    steps = plan["steps"]
    return bool(steps) and all(step["status"] == StepStatus.COMPLETED for step in steps)


def message_tags(role: AgentRole, final: bool = False, **extra: Any) -> Dict[str, Any]:
    """additional_kwargs tagging a message with its producer"""

    tags = {"from": role.value, "final": final}
    tags.update(extra)
    return tags


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of blocks"""

    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def has_terminal_marker(text: str) -> bool:
    return any(marker in text for marker in TERMINAL_MARKERS)


def latest_iteration(messages: List[BaseMessage]) -> int:
    """Iteration number of the most recent tagged message"""

    for message in reversed(messages):
        iteration = message.additional_kwargs.get("iteration")
        if iteration is not None:
            return int(iteration)
    return 0

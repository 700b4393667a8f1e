from typing import Dict, Optional, Tuple
from enum import Enum

from langgraph.graph import END

from planloop.domain.models.agent_config import GraphLimits
from planloop.domain.models.agent_state import AgentRole, GraphState, is_plan_failed
from planloop.infrastructure.observability.logging import agent_logger


class Node(str, Enum):
    """Closed set of graph destinations"""
    PLANNER = "planner"
    VALIDATOR = "validator"
    EXECUTOR = "executor"
    TOOLS = "tools"
    VERIFIER = "verifier"
    END = "end"


# Conditional-edge path map shared by every node
PATH_MAP: Dict[str, str] = {
    Node.PLANNER.value: Node.PLANNER.value,
    Node.VALIDATOR.value: Node.VALIDATOR.value,
    Node.EXECUTOR.value: Node.EXECUTOR.value,
    Node.TOOLS.value: Node.TOOLS.value,
    Node.VERIFIER.value: Node.VERIFIER.value,
    Node.END.value: END,
}


class GraphRouter:
    """Transition table deciding the next node from the current state"""

    def __init__(self, limits: GraphLimits):
        self.limits = limits

    def route(self, state: GraphState) -> str:
        """Path function for every conditional edge"""

        target, condition = self.decide(state)
        agent_logger.routed(
            state.get("last_agent"),
            target.value,
            condition,
            graph_step=state.get("current_graph_step"),
            step_index=state.get("current_step_index"),
            retry=state.get("retry"),
        )
        return target.value

    def decide(self, state: GraphState) -> Tuple[Node, str]:
        """Return the next node and the condition that selected it"""

        if state.get("current_graph_step", 0) >= self.limits.max_graph_steps:
            return Node.END, "max_graph_steps"

        messages = state.get("messages") or []
        tags = messages[-1].additional_kwargs if messages else {}
        if tags.get("final") or tags.get("error"):
            return Node.END, "terminal_message"

        role = _parse_role(state.get("last_agent"))

        if role == AgentRole.USER:
            return Node.PLANNER, "new_request"

        if role == AgentRole.PLANNER:
            if not state["plan"]["steps"] or is_plan_failed(state["plan"]):
                return Node.END, "planning_failed"
            if self.limits.plan_validation_enabled:
                return Node.VALIDATOR, "plan_created"
            return Node.EXECUTOR, "plan_created_unvalidated"

        if role == AgentRole.PLAN_VALIDATOR:
            if tags.get("validated"):
                return Node.EXECUTOR, "plan_validated"
            if state["retry"] <= self.limits.max_plan_retries:
                return Node.PLANNER, "plan_rejected"
            return Node.END, "plan_retries_exhausted"

        if role == AgentRole.EXECUTOR:
            if tags.get("replan"):
                return Node.PLANNER, "replan_requested"
            if getattr(messages[-1], "tool_calls", None):
                return Node.TOOLS, "tool_calls"
            return Node.VERIFIER, "executor_output"

        if role == AgentRole.TOOLS:
            return Node.VERIFIER, "tool_results"

        if role == AgentRole.EXEC_VERIFIER:
            if tags.get("validated"):
                if state["current_step_index"] >= len(state["plan"]["steps"]):
                    return Node.END, "plan_completed"
                return Node.EXECUTOR, "step_advanced"
            if is_plan_failed(state["plan"]) or state["retry"] >= self.limits.max_step_retries:
                return Node.END, "step_retries_exhausted"
            return Node.EXECUTOR, "step_retry"

        return Node.END, "unknown_agent"


def _parse_role(value: Optional[str]) -> Optional[AgentRole]:
    try:
        return AgentRole(value)
    except ValueError:
        return None

from typing import List, Sequence
import math

from langchain_core.messages import BaseMessage

from planloop.domain.models.agent_state import AgentRole, message_text

_UNSET = object()


def build_context_window(messages: Sequence[BaseMessage], max_iterations: int) -> List[BaseMessage]:
    """Most recent executor iterations, oldest first

    Walks the history newest-first, skipping model-selector messages and
    messages outside any iteration, and stops once max_iterations distinct
    iteration numbers have been collected. A model turn and its tool results
    share an iteration number, so they are kept or dropped together.
    """

    window: List[BaseMessage] = []
    remaining = max_iterations
    current = _UNSET

    for message in reversed(messages):
        tags = message.additional_kwargs
        if tags.get("from") == AgentRole.MODEL_SELECTOR:
            continue
        iteration = tags.get("iteration")
        if iteration is None:
            continue
        if iteration != current:
            if remaining == 0:
                break
            remaining -= 1
            current = iteration
        window.append(message)

    window.reverse()
    return window


def estimate_tokens(text: str) -> int:
    """Rough token count averaging a per-character and a per-word estimate"""

    if not text:
        return 0
    return math.ceil((len(text) / 4 + len(text.split())) / 2)


def estimate_messages_tokens(messages: Sequence[BaseMessage]) -> int:
    return sum(estimate_tokens(message_text(m)) for m in messages)

import pytest
from langchain_core.messages import AIMessage, ToolMessage

from planloop.domain.context.memory.short_term_memory import (
    ShortTermMemory, format_short_term, format_step_trail
)
from planloop.domain.models.agent_state import new_step


def test_push_evicts_oldest_at_capacity():
    stm = ShortTermMemory(capacity=3)
    items = []
    for n in range(5):
        items = stm.push(items, stm.make_item(f"entry {n}", "task"))
        assert len(items) <= 3

    assert [item["content"] for item in items] == ["entry 2", "entry 3", "entry 4"]


def test_push_does_not_mutate_input():
    stm = ShortTermMemory(capacity=2)
    first = stm.push([], stm.make_item("a", "task"))
    second = stm.push(first, stm.make_item("b", "task"))

    assert len(first) == 1
    assert len(second) == 2


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ShortTermMemory(capacity=0)


def test_step_trail_includes_tool_results_and_result():
    step = new_step(2, "fetch", "Fetch prices")
    step["result"] = "ACME at 101.50"
    trail = [
        AIMessage(content="", tool_calls=[{"name": "lookup_price", "args": {"symbol": "ACME"}, "id": "c1"}]),
        ToolMessage(content="ACME: 101.50 USD", tool_call_id="c1", name="lookup_price"),
    ]

    assert format_step_trail(step, trail) == "S2:fetch[T0:lookup_price->ACME: 101.50 USD]→ACME at 101.50"


def test_step_trail_caps_tool_text():
    step = new_step(1, "dump", "Dump")
    trail = [ToolMessage(content="y" * 1000, tool_call_id="c1", name="dump_report")]

    text = format_step_trail(step, trail)
    assert text == "S1:dump[T0:dump_report->" + "y" * 200 + "]"


def test_format_short_term_is_oldest_first():
    stm = ShortTermMemory(capacity=3)
    items = stm.push(stm.push([], stm.make_item("first", "t")), stm.make_item("second", "t"))

    assert format_short_term(items) == "first\nsecond"
    assert format_short_term([]) == ""

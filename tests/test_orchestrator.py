import asyncio

import pytest
from langchain_core.messages import AIMessage, ToolMessage

from planloop.domain.context.memory.vector_memory_store import VectorMemoryStore
from planloop.domain.errors import ConfigurationError, ThreadBusyError, ToolNotFoundError
from planloop.domain.models.agent_config import GraphLimits
from planloop.domain.models.agent_state import StepStatus, ThreadStatus
from planloop.domain.models.events import EventType
from planloop.domain.orchestration.core.main_agent import AgentOrchestrator

from fakes import ScriptedGateway, approve, failed, passed, proposal, reject, tool_call_message


def finals(events):
    return [e for e in events if e.final]


def node_ends(events):
    return [e.node_role for e in events if e.event == EventType.END and not e.final]


async def assert_state_invariants(orchestrator, thread_id):
    config = {"configurable": {"thread_id": thread_id}}
    async for snapshot in orchestrator.workflow.aget_state_history(config):
        values = snapshot.values
        if not values.get("plan"):
            continue
        assert 0 <= values["current_step_index"] <= len(values["plan"]["steps"])
        assert values["retry"] >= 0


async def test_three_step_plan_completes(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("fetch", "analyse", "report"))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed(), passed(), passed())
        .respond("Fetched prices", "Prices trend up", "Report: the market is up")
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-a", "Summarise the market")

    assert node_ends(events) == [
        "planner", "validator", "executor", "verifier", "executor", "verifier", "executor", "verifier",
    ]
    [final] = finals(events)
    assert events[-1] is final
    assert final.status == ThreadStatus.COMPLETED
    assert final.error is False and final.aborted is False
    assert final.payload["reason"] == "plan_completed"
    assert final.checkpoint_id is not None

    checkpoint = await orchestrator.get_checkpoint("thread-a")
    state = checkpoint.state
    assert state["current_step_index"] == 3
    assert state["retry"] == 0
    assert [s["status"] for s in state["plan"]["steps"]] == [StepStatus.COMPLETED] * 3
    assert state["messages"][-1].content == "Last Step 3 has been success"
    assert len(gateway.calls_for("StepVerdict")) == 3
    await assert_state_invariants(orchestrator, "thread-a")


async def test_start_and_token_events_are_streamed(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("answer"))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed())
        .respond("The market is up today")
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-tokens", "How is the market?")

    starts = [e.node_role for e in events if e.event == EventType.START]
    assert starts == ["planner", "validator", "executor", "verifier"]
    tokens = [e for e in events if e.event == EventType.TOKEN]
    assert "".join(e.payload["content"] for e in tokens) == "The market is up today"
    assert all(e.node_role == "executor" and e.payload["iteration"] == 1 for e in tokens)


async def test_rejected_plans_end_after_retry_bound(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", *[proposal("fetch", "report")] * 4)
        .script("PlanVerdict", reject(), reject(), reject(), reject())
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-b", "Summarise the market")

    assert node_ends(events) == ["planner", "validator"] * 4
    assert "executor" not in node_ends(events)
    [final] = finals(events)
    assert final.status == ThreadStatus.FAILED
    assert final.payload["reason"] == "plan_retries_exhausted"
    assert len(gateway.calls_for("PlanProposal")) == 4
    await assert_state_invariants(orchestrator, "thread-b")


async def test_step_failing_three_times_fails_thread(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("fetch", "report"))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed(), failed(), failed(), failed())
        .respond("Fetched", "attempt 1", "attempt 2", "attempt 3")
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-c", "Summarise the market")

    [final] = finals(events)
    assert final.status == ThreadStatus.FAILED
    assert final.payload["reason"] == "step_retries_exhausted"

    state = (await orchestrator.get_checkpoint("thread-c")).state
    assert state["plan"]["steps"][0]["status"] == StepStatus.COMPLETED
    assert state["plan"]["steps"][1]["status"] == StepStatus.FAILED
    assert state["current_step_index"] == 1
    assert state["retry"] == 3
    assert node_ends(events).count("executor") == 4
    await assert_state_invariants(orchestrator, "thread-c")


async def test_abort_emits_single_aborted_event(make_orchestrator):
    gateway = ScriptedGateway(block_stream=True)
    gateway.script("PlanProposal", proposal("slow")).script("PlanVerdict", approve()).respond("never")
    orchestrator = make_orchestrator(gateway)
    events = []

    async def consume():
        async for event in orchestrator.stream("thread-d", "Take your time"):
            events.append(event)

    consumer = asyncio.create_task(consume())
    await asyncio.wait_for(gateway.stream_started.wait(), timeout=5)

    assert orchestrator.is_running("thread-d")
    assert orchestrator.abort("thread-d") is True
    await asyncio.wait_for(consumer, timeout=5)

    [final] = finals(events)
    assert events[-1] is final
    assert final.aborted is True
    assert final.status == ThreadStatus.ABORTED
    assert not any(e.error for e in events)
    assert not orchestrator.is_running("thread-d")
    assert orchestrator.abort("thread-d") is False


async def test_abort_before_first_step_still_ends_stream(make_orchestrator, gateway):
    orchestrator = make_orchestrator(gateway)
    events = []

    async def consume():
        async for event in orchestrator.stream("thread-early-abort", "Hello"):
            events.append(event)

    consumer = asyncio.create_task(consume())
    while not orchestrator.is_running("thread-early-abort"):
        await asyncio.sleep(0)
    assert orchestrator.abort("thread-early-abort") is True
    await asyncio.wait_for(consumer, timeout=3)

    assert len(events) == 1
    assert events[0].final is True
    assert events[0].aborted is True
    assert events[0].status == ThreadStatus.ABORTED
    assert not orchestrator.is_running("thread-early-abort")


async def test_tool_round_trip(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("fetch", types={"fetch": "tools"}))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed())
        .respond(tool_call_message("lookup_price", {"symbol": "ACME"}))
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-tools", "Price of ACME?")

    assert node_ends(events) == ["planner", "validator", "executor", "tools", "verifier"]
    state = (await orchestrator.get_checkpoint("thread-tools")).state
    tool_messages = [m for m in state["messages"] if isinstance(m, ToolMessage)]
    assert tool_messages[0].content == "ACME: 101.50 USD"
    assert tool_messages[0].additional_kwargs["iteration"] == 1
    assert state["plan"]["steps"][0]["result"] == "ACME: 101.50 USD"
    assert finals(events)[0].status == ThreadStatus.COMPLETED


async def test_unknown_tool_propagates_after_final_event(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("launch"))
        .script("PlanVerdict", approve())
        .respond(tool_call_message("launch_rocket", {}))
    )
    orchestrator = make_orchestrator(gateway)
    events = []

    with pytest.raises(ToolNotFoundError):
        async for event in orchestrator.stream("thread-unknown-tool", "Launch"):
            events.append(event)

    assert events[-1].final is True
    assert events[-1].error is True
    assert not orchestrator.is_running("thread-unknown-tool")


async def test_tool_failure_ends_thread_with_error_event(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("query"))
        .script("PlanVerdict", approve())
        .respond(tool_call_message("broken_tool", {"query": "x"}))
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-broken-tool", "Query the backend")

    [final] = finals(events)
    assert final.error is True
    assert final.status == ThreadStatus.FAILED
    assert "backend unavailable" in final.payload["error"]


async def test_executor_error_fails_thread(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("answer"))
        .script("PlanVerdict", approve())
        .respond(RuntimeError("provider exploded"))
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-exec-error", "Answer")

    [final] = finals(events)
    assert final.status == ThreadStatus.FAILED
    assert final.error is True
    assert final.payload["error"] == "unexpected_error"
    assert "verifier" not in node_ends(events)


async def test_graph_step_ceiling(make_orchestrator, agent_config):
    agent_config.limits = GraphLimits(max_graph_steps=3)
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("a", "b"))
        .script("PlanVerdict", approve())
        .respond("working")
    )
    orchestrator = make_orchestrator(gateway, agent_config)

    events = await orchestrator.invoke("thread-ceiling", "Do it")

    assert node_ends(events) == ["planner", "validator", "executor"]
    [final] = finals(events)
    assert final.status == ThreadStatus.FAILED
    assert final.payload["reason"] == "max_graph_steps"


async def test_plan_validation_can_be_skipped(make_orchestrator, agent_config):
    agent_config.limits = GraphLimits(plan_validation_enabled=False)
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("answer"))
        .script("StepVerdict", passed())
        .respond("done")
    )
    orchestrator = make_orchestrator(gateway, agent_config)

    events = await orchestrator.invoke("thread-no-validation", "Answer")

    assert node_ends(events) == ["planner", "executor", "verifier"]
    assert finals(events)[0].status == ThreadStatus.COMPLETED


async def test_executor_can_request_replan(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("use dead source", "report"), proposal("use live source"))
        .script("PlanVerdict", approve(), approve())
        .script("StepVerdict", passed())
        .respond("REQUEST_REPLAN: the source is offline", "Live data: market up")
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-replan", "Summarise the market")

    assert node_ends(events) == ["planner", "validator", "executor", "planner", "validator", "executor", "verifier"]
    state = (await orchestrator.get_checkpoint("thread-replan")).state
    assert [s["name"] for s in state["plan"]["steps"]] == ["use live source"]
    assert finals(events)[0].status == ThreadStatus.COMPLETED


async def test_second_invocation_on_running_thread_is_rejected(make_orchestrator):
    gateway = ScriptedGateway(block_stream=True)
    gateway.script("PlanProposal", proposal("slow")).script("PlanVerdict", approve()).respond("never")
    orchestrator = make_orchestrator(gateway)

    consumer = asyncio.create_task(orchestrator.invoke("thread-busy", "First"))
    await asyncio.wait_for(gateway.stream_started.wait(), timeout=5)

    with pytest.raises(ThreadBusyError):
        await orchestrator.invoke("thread-busy", "Second")
    with pytest.raises(ThreadBusyError):
        await orchestrator.delete_thread("thread-busy")

    orchestrator.abort("thread-busy")
    events = await asyncio.wait_for(consumer, timeout=5)
    assert finals(events)[0].aborted is True


async def test_threads_run_concurrently(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("one"), proposal("two"))
        .script("PlanVerdict", approve(), approve())
        .script("StepVerdict", passed(), passed())
        .respond("first answer", "second answer")
    )
    orchestrator = make_orchestrator(gateway)

    results = await asyncio.gather(
        orchestrator.invoke("thread-x", "One"),
        orchestrator.invoke("thread-y", "Two"),
    )

    assert [finals(events)[0].status for events in results] == [ThreadStatus.COMPLETED] * 2
    assert {finals(events)[0].thread_id for events in results} == {"thread-x", "thread-y"}


async def test_follow_up_request_keeps_memory_and_step_counter(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("first"), proposal("second"))
        .script("PlanVerdict", approve(), approve())
        .script("StepVerdict", passed(), passed())
        .respond("first answer", "second answer")
    )
    orchestrator = make_orchestrator(gateway)

    await orchestrator.invoke("thread-follow", "First request")
    first = (await orchestrator.get_checkpoint("thread-follow")).state
    await orchestrator.invoke("thread-follow", "Second request")
    second = (await orchestrator.get_checkpoint("thread-follow")).state

    assert first["current_graph_step"] == 4
    assert second["current_graph_step"] == 8
    assert second["user_request"] == "Second request"
    assert second["current_step_index"] == 1
    assert [item["content"].split("→")[0] for item in second["memories"]["stm"]] == ["S1:first", "S1:second"]


async def test_long_term_memories_written_and_retrieved(make_orchestrator, embeddings):
    store = VectorMemoryStore()
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("fetch", "report"), proposal("reuse"))
        .script("PlanVerdict", approve(), approve())
        .script("StepVerdict", passed(), passed(), passed())
        .script("MemorySummary", {"summary": "Fetched ACME prices"}, {"summary": "Reported a rising market"},
                {"summary": "Reused earlier findings"})
        .respond("fetched", "reported", "reused")
    )
    orchestrator = make_orchestrator(gateway, memory_store=store, embeddings=embeddings)

    await orchestrator.invoke("thread-ltm-1", "Summarise the market")
    assert await store.count() == 2

    await orchestrator.invoke("thread-ltm-2", "Summarise the market again")
    ltm = (await orchestrator.get_checkpoint("thread-ltm-2")).state["memories"]["ltm"]
    assert {item["content"] for item in ltm} == {"Fetched ACME prices", "Reported a rising market"}
    similarities = [item["similarity"] for item in ltm]
    assert similarities == sorted(similarities, reverse=True)


async def test_usage_is_aggregated_into_final_payload(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("answer"))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed())
        .respond(AIMessage(content="done", usage_metadata={"input_tokens": 7, "output_tokens": 2, "total_tokens": 9}))
    )
    orchestrator = make_orchestrator(gateway)

    events = await orchestrator.invoke("thread-usage", "Answer")

    assert finals(events)[0].payload["usage"] == {"input_tokens": 7, "output_tokens": 2, "total_tokens": 9}


async def test_delete_thread_drops_checkpoints(make_orchestrator):
    gateway = (
        ScriptedGateway()
        .script("PlanProposal", proposal("answer"))
        .script("PlanVerdict", approve())
        .script("StepVerdict", passed())
        .respond("done")
    )
    orchestrator = make_orchestrator(gateway)
    await orchestrator.invoke("thread-delete", "Answer")

    await orchestrator.delete_thread("thread-delete")

    checkpoint = await orchestrator.get_checkpoint("thread-delete")
    assert checkpoint.state == {}
    assert checkpoint.checkpoint_id is None


def test_missing_gateway_is_a_configuration_error(agent_config):
    with pytest.raises(ConfigurationError):
        AgentOrchestrator(agent_config, None)

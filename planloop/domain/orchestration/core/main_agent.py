from typing import Dict, Any, List, Optional, Sequence, AsyncIterator, Tuple, Union
import asyncio
import uuid

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage, HumanMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import START, StateGraph
from langgraph.types import Command, StateSnapshot

from planloop.config import OrchestratorSettings
from planloop.domain.context.memory.memory_coordinator import MemoryCoordinator
from planloop.domain.errors import (
    ConfigurationError, StaleCheckpointError, ThreadBusyError,
    ThreadNotSuspendedError, ThreadSuspendedError, ToolRegistryError
)
from planloop.domain.models.agent_config import AgentConfig
from planloop.domain.models.agent_state import (
    AgentRole, GraphState, ThreadStatus,
    follow_up_state, initial_state, is_plan_completed, message_tags, message_text
)
from planloop.domain.models.events import Checkpoint, ResumeCommand, StreamEvent
from planloop.domain.orchestration.core.router import PATH_MAP, GraphRouter, Node
from planloop.domain.orchestration.nodes.executor import ExecutorNode
from planloop.domain.orchestration.nodes.plan_validator import PlanValidatorNode
from planloop.domain.orchestration.nodes.planner import PlannerNode
from planloop.domain.orchestration.nodes.verifier import StepVerifierNode
from planloop.domain.ports.memory_store import MemoryStore
from planloop.domain.ports.model_gateway import ModelGateway
from planloop.domain.streaming.streaming_handler import StreamingHandler, summarize_delta
from planloop.domain.tool.tool_executor import ToolExecutor
from planloop.domain.tool.tool_registry import ToolRegistry
from planloop.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

# Raised to the caller after the terminal event instead of being folded into it
PROPAGATED_ERRORS = (ConfigurationError, ToolRegistryError)

RECURSION_MARGIN = 5

_DONE = object()


class AgentOrchestrator:
    """Plan-execute-verify orchestrator using LangGraph"""

    def __init__(
        self,
        agent_config: AgentConfig,
        gateway: Optional[ModelGateway],
        tools: Union[ToolRegistry, Sequence[BaseTool], None] = None,
        memory_store: Optional[MemoryStore] = None,
        embeddings: Optional[Embeddings] = None,
        checkpointer: Optional[BaseCheckpointSaver] = None,
        callbacks: Optional[List[Any]] = None,
    ):
        if gateway is None:
            raise ConfigurationError(f"No model gateway bound to agent '{agent_config.id}'")

        self.agent_config = agent_config
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.memory = MemoryCoordinator(agent_config.memory, gateway, memory_store, embeddings)
        self.router = GraphRouter(agent_config.limits)

        self.planner = PlannerNode(gateway, self.registry, self.memory, agent_config)
        self.plan_validator = PlanValidatorNode(gateway, self.registry, self.memory, agent_config)
        self.executor = ExecutorNode(gateway, self.registry, agent_config)
        self.tool_executor = ToolExecutor(self.registry, agent_config.limits)
        self.verifier = StepVerifierNode(gateway, self.memory, agent_config)

        self.checkpointer = checkpointer or InMemorySaver()
        self.callbacks = list(callbacks or [])
        self.workflow = self._create_workflow()
        self._active: Dict[str, asyncio.Task] = {}

    @classmethod
    async def create(
        cls,
        agent_id: str,
        config_repository,
        gateway: Optional[ModelGateway],
        settings: Optional[OrchestratorSettings] = None,
        **kwargs,
    ) -> "AgentOrchestrator":
        """Build an orchestrator from a stored agent configuration

        Tracing callbacks come from the settings unless passed explicitly.
        """

        agent_config = await config_repository.get_agent_config(agent_id)
        if settings is not None and "callbacks" not in kwargs:
            kwargs["callbacks"] = settings.callbacks()
        return cls(agent_config, gateway, **kwargs)

    def _create_workflow(self):
        """Create the plan-execute-verify graph"""

        workflow = StateGraph(GraphState)

        workflow.add_node(Node.PLANNER.value, self.planner.run)
        workflow.add_node(Node.VALIDATOR.value, self.plan_validator.run)
        workflow.add_node(Node.EXECUTOR.value, self.executor.run)
        workflow.add_node(Node.TOOLS.value, self.tool_executor.run)
        workflow.add_node(Node.VERIFIER.value, self.verifier.run)

        # Every transition, including the entry, goes through the same router
        workflow.add_conditional_edges(START, self.router.route, PATH_MAP)
        for node in (Node.PLANNER, Node.VALIDATOR, Node.EXECUTOR, Node.TOOLS, Node.VERIFIER):
            workflow.add_conditional_edges(node.value, self.router.route, PATH_MAP)

        return workflow.compile(checkpointer=self.checkpointer)

    def _run_config(self, thread_id: str, checkpoint_id: Optional[str] = None) -> RunnableConfig:
        configurable = {"thread_id": thread_id}
        if checkpoint_id:
            configurable["checkpoint_id"] = checkpoint_id
        return {
            "configurable": configurable,
            "recursion_limit": self.agent_config.limits.max_graph_steps + RECURSION_MARGIN,
            "callbacks": self.callbacks,
            "metadata": {
                "agent_id": self.agent_config.id,
                "langfuse_session_id": thread_id,
                "langfuse_tags": ["planloop", self.agent_config.mode.value],
            },
        }

    async def stream(self, thread_id: str, user_input: str) -> AsyncIterator[StreamEvent]:
        """Run a new request on a thread, yielding its events"""

        config = self._run_config(thread_id)
        snapshot = await self.workflow.aget_state(config)
        if self._is_suspended(snapshot):
            raise ThreadSuspendedError(thread_id)

        message = HumanMessage(content=user_input, additional_kwargs=message_tags(AgentRole.USER))
        if snapshot.values:
            graph_input = follow_up_state(user_input, message)
        else:
            graph_input = initial_state(user_input, message)

        async for event in self._run(thread_id, graph_input, config):
            yield event

    async def resume(self, command: ResumeCommand) -> AsyncIterator[StreamEvent]:
        """Resume a suspended thread with the user's input"""

        config = self._run_config(command.thread_id)
        snapshot = await self.workflow.aget_state(config)
        if not self._is_suspended(snapshot):
            raise ThreadNotSuspendedError(command.thread_id)

        latest_id = snapshot.config["configurable"].get("checkpoint_id")
        if command.checkpoint_id != latest_id:
            raise StaleCheckpointError(command.thread_id, command.checkpoint_id, latest_id)

        logger.info("Resuming thread", thread_id=command.thread_id, checkpoint_id=latest_id)
        async for event in self._run(command.thread_id, Command(resume=command.user_input), config):
            yield event

    async def invoke(self, thread_id: str, user_input: str) -> List[StreamEvent]:
        """Run a request to completion and return every event"""

        return [event async for event in self.stream(thread_id, user_input)]

    def abort(self, thread_id: str) -> bool:
        """Cancel the thread's in-flight invocation; False if none is running"""

        task = self._active.get(thread_id)
        if task is None or task.done():
            return False
        logger.info("Abort requested", thread_id=thread_id)
        task.cancel()
        return True

    def is_running(self, thread_id: str) -> bool:
        task = self._active.get(thread_id)
        return task is not None and not task.done()

    async def _run(self, thread_id: str, graph_input: Any, config: RunnableConfig) -> AsyncIterator[StreamEvent]:
        if self.is_running(thread_id):
            raise ThreadBusyError(thread_id)

        handler = StreamingHandler(thread_id, str(uuid.uuid4()))
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._pump(graph_input, config, handler, queue))
        producer.add_done_callback(lambda task: self._on_producer_done(task, handler, queue))
        self._active[thread_id] = producer

        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not producer.done():
                producer.cancel()
            if self._active.get(thread_id) is producer:
                del self._active[thread_id]

    async def _pump(self, graph_input: Any, config: RunnableConfig, handler: StreamingHandler, queue: asyncio.Queue):
        """Drive the graph and feed events to the consumer queue"""

        thread_id = handler.thread_id
        with structlog.contextvars.bound_contextvars(
            thread_id=thread_id, run_id=handler.run_id, agent_id=self.agent_config.id
        ):
            try:
                async for mode, chunk in self.workflow.astream(
                    graph_input, config, stream_mode=["updates", "custom"]
                ):
                    if mode == "custom":
                        event = handler.handle_custom(chunk)
                        if event is not None:
                            queue.put_nowait(event)
                        continue

                    handler.checkpoint_id = await self._latest_checkpoint_id(config)
                    for event in handler.handle_update(chunk):
                        queue.put_nowait(event)

                await self.memory.drain(thread_id)
                queue.put_nowait(await self._final_event(config, handler))
            except asyncio.CancelledError:
                logger.info("Invocation aborted", thread_id=thread_id)
                raise
            except PROPAGATED_ERRORS as e:
                logger.error("Invocation failed", thread_id=thread_id, error=str(e), error_type=e.__class__.__name__)
                metrics.increment_counter("runs.failed")
                queue.put_nowait(handler.final_event(
                    ThreadStatus.FAILED,
                    {"reason": e.__class__.__name__, "error": str(e)},
                    error=True,
                ))
                queue.put_nowait(e)
                return
            except Exception as e:
                logger.exception("Invocation failed", thread_id=thread_id, error=str(e))
                metrics.increment_counter("runs.failed")
                queue.put_nowait(handler.final_event(
                    ThreadStatus.FAILED,
                    {"reason": "internal_error", "error": str(e) or e.__class__.__name__},
                    error=True,
                ))

            queue.put_nowait(_DONE)

    def _on_producer_done(self, task: asyncio.Task, handler: StreamingHandler, queue: asyncio.Queue):
        """Close the stream of a producer cancelled before or while it ran"""

        if not task.cancelled():
            return
        self.memory.cancel(handler.thread_id)
        metrics.increment_counter("runs.aborted")
        queue.put_nowait(handler.final_event(ThreadStatus.ABORTED, {"reason": "aborted"}, aborted=True))
        queue.put_nowait(_DONE)

    async def _latest_checkpoint_id(self, config: RunnableConfig) -> Optional[str]:
        snapshot = await self.workflow.aget_state(config)
        return snapshot.config["configurable"].get("checkpoint_id")

    async def _final_event(self, config: RunnableConfig, handler: StreamingHandler) -> StreamEvent:
        snapshot = await self.workflow.aget_state(config)
        handler.checkpoint_id = snapshot.config["configurable"].get("checkpoint_id")
        status, payload = self.resolve_outcome(snapshot)
        metrics.increment_counter(f"runs.{status.value}")
        logger.info("Invocation finished", status=status.value, reason=payload.get("reason"))
        return handler.final_event(status, payload, error=payload.get("error") is not None)

    def resolve_outcome(self, snapshot: StateSnapshot) -> Tuple[ThreadStatus, Dict[str, Any]]:
        """Thread status and terminal payload for a finished or suspended run"""

        interrupts = self._interrupts(snapshot)
        if interrupts:
            return ThreadStatus.SUSPENDED, {"reason": "awaiting_input", "interrupts": interrupts}

        values = snapshot.values
        if not values:
            return ThreadStatus.FAILED, {"reason": "empty_thread"}

        messages = values.get("messages") or []
        last = messages[-1] if messages else None
        tags = last.additional_kwargs if last is not None else {}
        _, condition = self.router.decide(values)

        payload: Dict[str, Any] = {
            "reason": condition,
            "answer": message_text(last) if last is not None else "",
            "current_step_index": values.get("current_step_index"),
            "retry": values.get("retry"),
            "current_graph_step": values.get("current_graph_step"),
            "usage": self._usage(messages),
            **summarize_delta({"plan": values["plan"]}),
        }
        if tags.get("error"):
            payload["error"] = tags["error"]

        if is_plan_completed(values["plan"]):
            payload["reason"] = "plan_completed"
            return ThreadStatus.COMPLETED, payload
        if tags.get("final") and not tags.get("error"):
            payload["reason"] = "final_answer"
            return ThreadStatus.COMPLETED, payload
        return ThreadStatus.FAILED, payload

    async def get_checkpoint(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Checkpoint:
        """Snapshot of a thread, latest unless checkpoint_id is given"""

        snapshot = await self.workflow.aget_state(self._run_config(thread_id, checkpoint_id))
        if snapshot.next and not self._is_suspended(snapshot):
            status = ThreadStatus.RUNNING
        elif snapshot.values or self._is_suspended(snapshot):
            status, _ = self.resolve_outcome(snapshot)
        else:
            status = ThreadStatus.RUNNING

        return Checkpoint(
            thread_id=thread_id,
            checkpoint_id=snapshot.config["configurable"].get("checkpoint_id"),
            state=dict(snapshot.values or {}),
            created_at=snapshot.created_at,
            status=status,
            pending_nodes=list(snapshot.next),
            interrupts=self._interrupts(snapshot),
        )

    async def delete_thread(self, thread_id: str) -> None:
        """Drop every checkpoint of a thread"""

        if self.is_running(thread_id):
            raise ThreadBusyError(thread_id)
        await self.checkpointer.adelete_thread(thread_id)
        self.memory.forget(thread_id)
        logger.info("Thread deleted", thread_id=thread_id)

    @staticmethod
    def _interrupts(snapshot: StateSnapshot) -> List[Any]:
        return [interrupt.value for task in snapshot.tasks for interrupt in task.interrupts]

    @classmethod
    def _is_suspended(cls, snapshot: StateSnapshot) -> bool:
        return bool(cls._interrupts(snapshot))

    @staticmethod
    def _usage(messages) -> Dict[str, int]:
        usage = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}
        for message in messages:
            if isinstance(message, AIMessage) and message.usage_metadata:
                for key in usage:
                    usage[key] += message.usage_metadata.get(key, 0)
        return usage

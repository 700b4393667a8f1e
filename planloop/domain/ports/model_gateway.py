"""
Port for language model providers.

Nodes depend on this interface only; infrastructure adapters such as
LangChainModelGateway implement it. Tests drive the graph with scripted fakes.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Sequence, Type, TypeVar

from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.tools import BaseTool
from pydantic import BaseModel

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ModelGateway(ABC):
    @abstractmethod
    async def ainvoke(
        self, messages: Sequence[BaseMessage], tools: Optional[Sequence[BaseTool]] = None
    ) -> AIMessage:
        """Return one completion; tool calls are carried on AIMessage.tool_calls."""
        ...

    @abstractmethod
    def astream(
        self, messages: Sequence[BaseMessage], tools: Optional[Sequence[BaseTool]] = None
    ) -> AsyncIterator[AIMessageChunk]:
        """Yield incremental chunks whose sum is the full completion."""
        ...

    @abstractmethod
    async def astructured(self, messages: Sequence[BaseMessage], schema: Type[SchemaT]) -> SchemaT:
        """Return an instance of schema parsed from the model's answer.

        Raises:
            ModelInvocationError: if the call fails or the output does not match.
        """
        ...

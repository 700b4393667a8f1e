"""
Infrastructure adapter: LangChain chat model -> ModelGateway.

All BaseChatModel details (tool binding, structured output, provider errors)
are confined here. Provider exceptions are translated into ModelInvocationError,
with context-window failures surfaced as ContextLimitExceededError.
"""

from typing import Any, AsyncIterator, Optional, Sequence, Type

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.tools import BaseTool

from planloop.domain.errors import (
    ContextLimitExceededError, ModelInvocationError, is_context_limit_error
)
from planloop.domain.ports.model_gateway import ModelGateway, SchemaT

logger = structlog.get_logger(__name__)


def classify_model_error(error: Exception) -> ModelInvocationError:
    if isinstance(error, ModelInvocationError):
        return error
    if is_context_limit_error(error):
        return ContextLimitExceededError(str(error), cause=error)
    return ModelInvocationError(str(error) or error.__class__.__name__, cause=error)


class LangChainModelGateway(ModelGateway):
    """Wraps a BaseChatModel and exposes the ModelGateway interface."""

    def __init__(self, model: BaseChatModel, structured_method: Optional[str] = None) -> None:
        """
        Args:
            model:             Any LangChain chat model supporting tool calling.
            structured_method: Optional with_structured_output method
                               ("function_calling", "json_schema", "json_mode").
        """
        self._model = model
        self._structured_method = structured_method

    def _bind(self, tools: Optional[Sequence[BaseTool]]) -> Any:
        if tools:
            return self._model.bind_tools(list(tools))
        return self._model

    async def ainvoke(
        self, messages: Sequence[BaseMessage], tools: Optional[Sequence[BaseTool]] = None
    ) -> AIMessage:
        try:
            return await self._bind(tools).ainvoke(list(messages))
        except Exception as e:
            raise classify_model_error(e) from e

    async def astream(
        self, messages: Sequence[BaseMessage], tools: Optional[Sequence[BaseTool]] = None
    ) -> AsyncIterator[AIMessageChunk]:
        try:
            async for chunk in self._bind(tools).astream(list(messages)):
                yield chunk
        except Exception as e:
            raise classify_model_error(e) from e

    async def astructured(self, messages: Sequence[BaseMessage], schema: Type[SchemaT]) -> SchemaT:
        kwargs = {"method": self._structured_method} if self._structured_method else {}
        try:
            result = await self._model.with_structured_output(schema, **kwargs).ainvoke(list(messages))
        except Exception as e:
            raise classify_model_error(e) from e

        if result is None:
            raise ModelInvocationError(f"Model returned no {schema.__name__}")
        if isinstance(result, dict):
            return schema.model_validate(result)
        return result

from typing import Dict, List, Optional, Sequence

from langchain_core.tools import BaseTool

from planloop.domain.errors import ToolNotFoundError, ToolRegistryError


class ToolRegistry:
    """Registry of tools the executor may bind"""

    def __init__(self, tools: Optional[Sequence[BaseTool]] = None):
        self.tools: Dict[str, BaseTool] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        for tool in tools or []:
            self.register_tool(tool)

    def register_tool(self, tool: BaseTool, category: str = "general"):
        """Register a new tool"""

        if tool.name in self.tools:
            raise ToolRegistryError(f"Tool '{tool.name}' is already registered")

        self.tools[tool.name] = tool
        self.tool_categories.setdefault(category, []).append(tool.name)

    def get_tool(self, name: str) -> BaseTool:
        """Look up a tool, raising ToolNotFoundError if it is unknown"""

        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_available_tools(self) -> List[BaseTool]:
        return list(self.tools.values())

    def get_tools_by_category(self, category: str) -> List[BaseTool]:
        return [self.tools[name] for name in self.tool_categories.get(category, []) if name in self.tools]

    def describe(self) -> str:
        """Tool list for prompts"""

        if not self.tools:
            return "No tools available."
        return "\n".join(f"- {tool.name}: {tool.description}" for tool in self.tools.values())

    def __len__(self) -> int:
        return len(self.tools)

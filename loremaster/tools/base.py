"""
Base class for tool adapters.

The resolution loop calls tools through this interface without knowing
where they run. In this server every tool runs inside the connected game
client, so the concrete adapter forwards calls over the world's WebSocket.
"""

from abc import ABC, abstractmethod
from typing import Any


class ToolAdapter(ABC):
    """
    Abstract base class for tool adapters.

    ``call`` is allowed to raise; the resolution loop turns any exception
    into an error result for the LLM instead of failing the request.
    """

    @abstractmethod
    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool with the given arguments.

        Args:
            tool_name: Name of the tool to invoke
            arguments: Tool-specific arguments

        Returns:
            The tool's result, any JSON-serializable value

        Raises:
            UnknownToolError: If tool_name is not registered
            LoremasterError: If the tool could not be executed
        """

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List all tools this adapter can run.

        Returns:
            Tool schemas with ``name``, ``description`` and ``input_schema``.
        """

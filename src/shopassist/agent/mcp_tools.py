import json
import logging
import os
from typing import Any, Dict, Iterable, List, Sequence

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..errors import ToolExecutionFailure
from ..models import CallerContext
from .tools import TOOL_NAME_PATTERN, ToolDefinition

logger = logging.getLogger(__name__)


def _server_params(command: Sequence[str]) -> StdioServerParameters:
    return StdioServerParameters(
        command=command[0],
        args=list(command[1:]),
        env=dict(os.environ),
    )


def _make_handler(command: Sequence[str], tool_name: str):
    async def handler(arguments: Dict[str, Any], context: CallerContext) -> str:
        logger.info("Calling MCP tool %s on server %s", tool_name, command[0])
        async with stdio_client(_server_params(command)) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(tool_name, arguments)
        if getattr(result, "isError", False):
            text = result.content[0].text if result.content else "MCP tool reported an error"
            raise ToolExecutionFailure(text)
        if result.content:
            return result.content[0].text or ""
        return json.dumps(getattr(result, "structuredContent", None) or {}, default=str)

    return handler


async def load_mcp_tools(
    commands: Iterable[Sequence[str]],
    reserved_names: Iterable[str] = (),
) -> List[ToolDefinition]:
    """Discover tools on each MCP stdio server and wrap them as ToolDefinitions.

    Args:
        commands: One argv list per MCP server.
        reserved_names: Names already taken by built-in tools; MCP tools with
            these names are skipped.

    Returns:
        List[ToolDefinition]: Definitions whose handlers call back into the server.
    """
    taken = set(reserved_names)
    definitions: List[ToolDefinition] = []

    for command in commands:
        try:
            async with stdio_client(_server_params(command)) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    tools_result = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", command[0], e)
            continue
        except Exception as e:
            logger.exception("Unexpected error listing tools on MCP server '%s': %s", command[0], e)
            continue

        for tool_info in tools_result.tools:
            if not TOOL_NAME_PATTERN.match(tool_info.name) or tool_info.name in taken:
                logger.warning("Skipping MCP tool with invalid or duplicate name: %s", tool_info.name)
                continue
            taken.add(tool_info.name)
            definitions.append(
                ToolDefinition(
                    name=tool_info.name,
                    description=tool_info.description or "",
                    handler=_make_handler(command, tool_info.name),
                    parameters=tool_info.inputSchema or {"type": "object", "properties": {}},
                )
            )
        logger.info("Loaded %d tools from MCP server '%s'", len(tools_result.tools), command[0])

    return definitions

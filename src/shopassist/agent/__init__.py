from __future__ import annotations

"""Agent package for the storefront shopping assistant.

This package exposes a service-style interface for the agent while keeping
implementation details (executor loop, tools, model client, MCP wiring)
organized in separate modules.
"""

from .executor import GraphExecutor, RunOutcome
from .mcp_tools import load_mcp_tools
from .service import AgentService, build_agent_service
from .storefront import build_storefront_tools
from .tools import ToolDefinition, ToolRegistry

__all__ = [
    "AgentService",
    "GraphExecutor",
    "RunOutcome",
    "ToolDefinition",
    "ToolRegistry",
    "build_agent_service",
    "build_storefront_tools",
    "load_mcp_tools",
]

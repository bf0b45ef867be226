"""Tool execution: sandboxed runtime and the marker-driven provider wrapper."""

from coderide.tools.runtime import (
    SUPPORTED_TOOLS,
    ToolCall,
    ToolExecutionContext,
    ToolResult,
    ToolRuntime,
    ToolRuntimePolicy,
)

__all__ = [
    "SUPPORTED_TOOLS",
    "ToolCall",
    "ToolExecutionContext",
    "ToolResult",
    "ToolRuntime",
    "ToolRuntimePolicy",
]

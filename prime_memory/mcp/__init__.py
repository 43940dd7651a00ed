from prime_memory.mcp.server import (
    mcp,
    mcp_stream_app,
    tool_inventory_status,
)

__all__ = [
    "mcp",
    "mcp_stream_app",
    "tool_inventory_status",
]

"""MCP helper-process package.

    client.py    — McpClient (one stdio helper, line-delimited JSON-RPC), ToolDescriptor
    discovery.py — discover_tools() across all enabled servers, ToolCatalog
"""

from .client import McpClient, ToolDescriptor
from .discovery import CatalogEntry, ServerReport, ToolCatalog, discover_tools

__all__ = [
    "CatalogEntry",
    "McpClient",
    "ServerReport",
    "ToolCatalog",
    "ToolDescriptor",
    "discover_tools",
]

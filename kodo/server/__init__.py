"""
Kodo MCP surface
"""

from .mcp_server import KodoMCPServer

__all__ = ["KodoMCPServer"]

"""Process cleanup for build nodes, served over MCP."""

__version__ = "0.1.0"

"""MCP Chat backend package."""

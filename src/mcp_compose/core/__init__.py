"""Core MCP Compose functionality."""

"""Command-line interface for MCP Compose."""

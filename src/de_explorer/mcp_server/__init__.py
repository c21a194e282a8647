"""MCP server exposing an interactive DE report as tools."""

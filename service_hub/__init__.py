"""MCP Hub: server registry, health monitor, schema federation and proxy gateway."""

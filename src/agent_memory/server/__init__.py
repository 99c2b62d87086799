"""MCP tool surface for agent memory: schemas, handlers, stdio and HTTP transports."""

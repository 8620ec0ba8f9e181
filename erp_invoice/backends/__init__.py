"""Invoice backends: models, storage, finalizer and MCP tools."""

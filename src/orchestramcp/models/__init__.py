"""Models domain: MCP tool inputs and results."""

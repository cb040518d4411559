"""memrefine MCP surface: tools, audit logger, and server entry point."""

#!/usr/bin/env python3
"""Run the MCP server."""

from harvester.server import run_mcp

if __name__ == "__main__":
    run_mcp()

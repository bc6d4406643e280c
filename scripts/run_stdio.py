#!/usr/bin/env python3
"""
Run MCP server in STDIO mode for desktop MCP clients
Uses the Jira credentials from your environment or .env file
"""
import sys
import os

# Add the project directory to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from planner_sync.server import mcp

if __name__ == "__main__":
    # Run with stdio transport (default for MCP)
    mcp.run()

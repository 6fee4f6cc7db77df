"""await-command MCP entry point.

Supports: python -m await_command_mcp
"""

from .app import main

if __name__ == "__main__":
    main()

"""
Entry point for running dmplz as a module.

Allows running the DM-Plz MCP server via:
    python -m dmplz
"""

from dmplz.server import main

if __name__ == "__main__":
    main()

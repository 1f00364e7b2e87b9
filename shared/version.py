"""Version information for mcp-ssh."""

__version__ = "0.1.0"

SERVER_NAME = "mcp-ssh"

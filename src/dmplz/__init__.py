"""DM-Plz - relay Claude Code permission requests to Telegram or Discord."""

__version__ = "0.1.0"

from .config import Config, Settings

__all__ = ["Config", "Settings", "__version__"]

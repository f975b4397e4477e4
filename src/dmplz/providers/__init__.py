"""Messaging providers.

Creates the provider matching the configured platform.
"""

from typing import Optional

from ..config import Settings
from ..errors import ConfigError
from ..store import StateStore
from .base import (
    ChatProvider,
    DecisionSignal,
    PromptHandle,
    ReasonPromptHandle,
    ReasonReply,
    ReasonReplyKind,
)
from .discord import DiscordProvider
from .telegram import TelegramProvider


def create_provider(settings: Settings, store: Optional[StateStore] = None) -> ChatProvider:
    """
    Create the messaging provider for the configured platform.

    Args:
        settings: Resolved configuration
        store: State store for provider bookkeeping (expired prompts)

    Raises:
        ConfigError: If the provider name is not supported
    """
    if settings.provider == "telegram":
        return TelegramProvider(settings, store=store)
    if settings.provider == "discord":
        return DiscordProvider(settings)
    raise ConfigError(f"Unsupported provider: {settings.provider}")


__all__ = [
    "ChatProvider",
    "DecisionSignal",
    "DiscordProvider",
    "PromptHandle",
    "ReasonPromptHandle",
    "ReasonReply",
    "ReasonReplyKind",
    "TelegramProvider",
    "create_provider",
]

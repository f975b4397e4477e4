"""DM-Plz MCP server: lets the agent message the operator over Telegram or Discord."""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from loguru import logger

from .config import Config, Settings
from .errors import ConfigError, ProviderError
from .logging_config import configure_logging
from .providers import ChatProvider, create_provider

SERVER_NAME = "dm-plz"

# Resolved on first use so importing the module never needs credentials
_settings: Optional[Settings] = None
_provider: Optional[ChatProvider] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Config.load()
        Config.validate(_settings)
    return _settings


def get_provider() -> ChatProvider:
    global _provider
    if _provider is None:
        _provider = create_provider(get_settings())
    return _provider


def provider_label(settings: Settings) -> str:
    return settings.provider.capitalize()


def format_notification(title: str, message: str, parse_mode: Optional[str]) -> str:
    """Bold the title in the markup the message is sent with."""
    if parse_mode == "HTML":
        return f"<b>{title}</b>\n\n{message}"
    return f"**{title}**\n\n{message}"


@asynccontextmanager
async def lifespan(server):
    """Verify the bot can connect before serving tools."""
    settings = get_settings()
    provider = get_provider()

    logger.info(f"Connecting to {settings.provider}...")
    info = await provider.get_info()
    logger.info(f"Connected: {info['name']}")
    logger.info(f"Chat/Channel: {settings.chat_id}")
    logger.info(f"Question timeout: {settings.question_timeout_ms}ms")

    yield

    logger.info(f"{SERVER_NAME} shutting down...")
    await provider.aclose()


mcp = FastMCP(name=SERVER_NAME, lifespan=lifespan)


@mcp.tool()
async def send_message(message: str, parse_mode: Optional[str] = None) -> str:
    """
    Send a simple notification message to the user.

    Use this to inform the user about something without needing a response
    (e.g., task completion, status update).

    Args:
        message: The message to send. Supports Markdown formatting.
        parse_mode: Optional message formatting mode (Markdown or HTML)
    """
    label = provider_label(get_settings())
    try:
        await get_provider().send_message(message, parse_mode)
    except ProviderError as e:
        logger.error(f"send_message failed: {e}")
        raise ToolError(f"Failed to send message: {e}")
    return f"Message sent successfully via {label}."


@mcp.tool()
async def ask_question(question: str, parse_mode: Optional[str] = None) -> str:
    """
    Send a question to the user and wait for their response.

    Use this when you need user input to make a decision or proceed with a
    task. Waits for a reply up to the configured question timeout.

    Args:
        question: The question to ask the user. Be clear and specific.
        parse_mode: Optional message formatting mode (Markdown or HTML)
    """
    settings = get_settings()
    provider = get_provider()
    try:
        await provider.send_message(question, parse_mode)
    except ProviderError as e:
        logger.error(f"ask_question failed to send: {e}")
        raise ToolError(f"Failed to send question: {e}")

    logger.info("Question sent, waiting for reply...")
    try:
        reply = await provider.wait_for_reply(settings.question_timeout)
    except (TimeoutError, ProviderError) as e:
        logger.warning(f"Error waiting for reply: {e}")
        raise ToolError(f"Failed to get user response: {e}")

    logger.info(f"Received reply: {reply}")
    return f"User's response:\n\n{reply}"


@mcp.tool()
async def send_notification(title: str, message: str, parse_mode: Optional[str] = None) -> str:
    """
    Send a notification with a title and detailed message.

    Use for important updates or completion reports.

    Args:
        title: Short title for the notification
        message: Detailed message body
        parse_mode: Optional message formatting mode (Markdown or HTML)
    """
    label = provider_label(get_settings())
    try:
        await get_provider().send_message(
            format_notification(title, message, parse_mode), parse_mode or "Markdown"
        )
    except ProviderError as e:
        logger.error(f"send_notification failed: {e}")
        raise ToolError(f"Failed to send notification: {e}")
    return f"Notification sent successfully via {label}."


def main():
    """Run the MCP server on stdio."""
    try:
        settings = get_settings()
    except ConfigError as e:
        configure_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(settings.log_level, settings.log_file)
    logger.info(f"Starting {SERVER_NAME} ({provider_label(settings)})...")

    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Discord REST API provider."""

import asyncio
import html
import re
import time
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from ..config import Settings
from ..errors import ProviderError
from .base import (
    ChatProvider,
    DecisionSignal,
    PromptHandle,
    ReasonPromptHandle,
    ReasonReply,
    expired_notice,
)

API_BASE_URL = "https://discord.com/api/v10"
POLL_INTERVAL_SECONDS = 2.0  # Discord rate limits
HTTP_TIMEOUT_SECONDS = 15.0

APPROVE_EMOJI = "✅"
APPROVE_SESSION_EMOJI = "🔄"
REJECT_EMOJI = "❌"

# When several reactions land in one tick, the most restrictive wins
DECISION_REACTIONS = [
    (REJECT_EMOJI, DecisionSignal.REJECT),
    (APPROVE_EMOJI, DecisionSignal.APPROVE),
    (APPROVE_SESSION_EMOJI, DecisionSignal.APPROVE_SESSION),
]
SEED_ORDER = [APPROVE_EMOJI, APPROVE_SESSION_EMOJI, REJECT_EMOJI]


def html_to_markdown(text: str) -> str:
    """Basic HTML to Discord markdown conversion."""
    converted = re.sub(r"<b>(.*?)</b>", r"**\1**", text)
    converted = re.sub(r"<i>(.*?)</i>", r"*\1*", converted)
    converted = re.sub(r"<code>(.*?)</code>", r"`\1`", converted)
    converted = re.sub(r'<a href="(.*?)">(.*?)</a>', r"[\2](\1)", converted)
    return html.unescape(re.sub(r"<[^>]*>", "", converted))


class DiscordProvider(ChatProvider):
    """
    Messaging over the Discord REST API.

    Decisions are reactions on the prompt message (the bot seeds one of each
    and ignores its own); reasons and replies are channel messages newer than
    the prompt.
    """

    name = "discord"

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.settings = settings
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._headers = {"Authorization": f"Bot {settings.bot_token}"}
        self._bot_user_id: Optional[str] = None
        self._permission_channel_id: Optional[str] = None
        self._last_message_id: Optional[str] = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform a REST call.

        Raises:
            ProviderError: On transport errors or a non-2xx response
        """
        try:
            response = await self._client.request(
                method,
                f"{API_BASE_URL}{path}",
                headers=self._headers,
                json=json,
                params=params,
            )
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(self.name, response.text, response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _get_bot_user_id(self) -> str:
        if self._bot_user_id is None:
            user = await self._request("GET", "/users/@me")
            self._bot_user_id = str(user["id"])
        return self._bot_user_id

    async def _get_permission_channel_id(self) -> str:
        """Resolve the DM channel when a DM user is configured."""
        if self._permission_channel_id is None:
            if self.settings.discord_dm_user_id:
                channel = await self._request(
                    "POST",
                    "/users/@me/channels",
                    json={"recipient_id": self.settings.discord_dm_user_id},
                )
                self._permission_channel_id = str(channel["id"])
            else:
                self._permission_channel_id = self.settings.effective_permission_chat_id
        return self._permission_channel_id

    async def _post_message(self, channel_id: str, content: str) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/channels/{channel_id}/messages", json={"content": content}
        )

    async def _human_messages_after(self, channel_id: str, after: Optional[str]) -> List[Dict[str, Any]]:
        """Messages newer than `after` not written by a bot, oldest first."""
        params: Dict[str, Any] = {"limit": 10}
        if after:
            params["after"] = after
        messages = await self._request("GET", f"/channels/{channel_id}/messages", params=params)
        bot_id = await self._get_bot_user_id()
        humans = [
            message
            for message in messages or []
            if str(message["author"]["id"]) != bot_id and not message["author"].get("bot")
        ]
        return sorted(humans, key=lambda message: int(message["id"]))

    async def get_info(self) -> Dict[str, str]:
        user = await self._request("GET", "/users/@me")
        self._bot_user_id = str(user["id"])
        discriminator = user.get("discriminator", "0")
        username = user["username"] if discriminator == "0" else f"{user['username']}#{discriminator}"
        return {"name": f"Discord ({username})", "identifier": username}

    async def send_message(self, text: str, parse_mode: Optional[str] = None) -> None:
        # Discord renders Markdown natively
        content = html_to_markdown(text) if parse_mode == "HTML" else text
        message = await self._post_message(self.settings.chat_id, content)
        self._last_message_id = str(message["id"])

    async def wait_for_reply(self, timeout: float) -> str:
        after = self._last_message_id
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("Timeout waiting for user response")
            await asyncio.sleep(min(self.poll_interval, remaining))
            try:
                messages = await self._human_messages_after(self.settings.chat_id, after)
            except ProviderError as e:
                logger.warning(f"Error polling for messages: {e}")
                continue
            if messages:
                return messages[0].get("content") or "(no content)"

    async def send_decision_prompt(self, message: str, request_id: str) -> PromptHandle:
        channel_id = await self._get_permission_channel_id()
        content = (
            f"{message}\n\n"
            f"{APPROVE_EMOJI} approve · {APPROVE_SESSION_EMOJI} allow for session · "
            f"{REJECT_EMOJI} reject"
        )
        sent = await self._post_message(channel_id, content)
        prompt = PromptHandle(
            request_id=request_id,
            chat_id=channel_id,
            message_id=str(sent["id"]),
            text=content,
        )

        for emoji in SEED_ORDER:
            try:
                await self._request(
                    "PUT",
                    f"/channels/{channel_id}/messages/{prompt.message_id}"
                    f"/reactions/{quote(emoji)}/@me",
                )
            except ProviderError as e:
                logger.warning(f"Failed to seed reaction {emoji}: {e}")

        return prompt

    async def _reaction_users(self, prompt: PromptHandle, emoji: str) -> List[Dict[str, Any]]:
        users = await self._request(
            "GET",
            f"/channels/{prompt.chat_id}/messages/{prompt.message_id}/reactions/{quote(emoji)}",
        )
        return users or []

    async def poll_decision(self, prompt: PromptHandle, timeout: float) -> DecisionSignal:
        await asyncio.sleep(min(self.poll_interval, max(timeout, 0.0)))
        bot_id = await self._get_bot_user_id()

        for emoji, signal in DECISION_REACTIONS:
            users = await self._reaction_users(prompt, emoji)
            # The bot's own seed reaction is not a decision
            if any(str(user["id"]) != bot_id and not user.get("bot") for user in users):
                return signal

        return DecisionSignal.NONE

    async def send_reason_prompt(
        self, prompt: PromptHandle, no_reason_keywords: Iterable[str]
    ) -> ReasonPromptHandle:
        keywords = list(no_reason_keywords)
        skip_keyword = keywords[0] if keywords else "no_reason"
        sent = await self._post_message(
            prompt.chat_id,
            f"✏️ Why was request `{prompt.request_id}` rejected?\n"
            f"Reply with a reason, or send `{skip_keyword}` to skip.",
        )
        return ReasonPromptHandle(prompt=prompt, message_id=str(sent["id"]))

    async def poll_reason(self, reason_prompt: ReasonPromptHandle, timeout: float) -> ReasonReply:
        await asyncio.sleep(min(self.poll_interval, max(timeout, 0.0)))
        messages = await self._human_messages_after(
            reason_prompt.prompt.chat_id, reason_prompt.message_id
        )
        if messages:
            return ReasonReply.from_text(messages[0].get("content") or "")
        return ReasonReply.none()

    async def _edit_prompt(self, prompt: PromptHandle, footer: str) -> None:
        await self._request(
            "PATCH",
            f"/channels/{prompt.chat_id}/messages/{prompt.message_id}",
            json={"content": f"{prompt.text}\n\n{footer}"},
        )
        try:
            await self._request(
                "DELETE", f"/channels/{prompt.chat_id}/messages/{prompt.message_id}/reactions"
            )
        except ProviderError as e:
            # DM channels do not allow clearing reactions; drop the bot's own instead
            logger.debug(f"Could not clear reactions on {prompt.message_id}: {e}")
            await self._remove_seed_reactions(prompt)

    async def _remove_seed_reactions(self, prompt: PromptHandle) -> None:
        for emoji in SEED_ORDER:
            try:
                await self._request(
                    "DELETE",
                    f"/channels/{prompt.chat_id}/messages/{prompt.message_id}"
                    f"/reactions/{quote(emoji)}/@me",
                )
            except ProviderError as e:
                logger.debug(f"Could not remove seed reaction {emoji} on {prompt.message_id}: {e}")

    async def mark_expired(self, prompt: PromptHandle) -> None:
        await self._edit_prompt(prompt, expired_notice(prompt.request_id))

    async def mark_resolved(self, prompt: PromptHandle, summary: str) -> None:
        await self._edit_prompt(prompt, summary)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

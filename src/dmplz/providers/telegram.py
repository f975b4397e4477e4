"""Telegram Bot API provider."""

import asyncio
import json
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from loguru import logger

from ..config import Settings
from ..errors import ProviderError
from ..store import StateStore
from .base import (
    ChatProvider,
    DecisionSignal,
    ExpiredPromptRegistry,
    PromptHandle,
    ReasonPromptHandle,
    ReasonReply,
    expired_notice,
)

API_BASE_URL = "https://api.telegram.org"
LONG_POLL_SECONDS = 10
HTTP_TIMEOUT_SECONDS = 15.0

DECISION_BUTTONS = [
    {"text": "✅ Approve", "callback_data": DecisionSignal.APPROVE.value},
    {"text": "🔄 Allow for session", "callback_data": DecisionSignal.APPROVE_SESSION.value},
    {"text": "❌ Reject", "callback_data": DecisionSignal.REJECT.value},
]
_DECISIONS_BY_DATA = {
    button["callback_data"]: DecisionSignal(button["callback_data"])
    for button in DECISION_BUTTONS
}
SKIP_REASON_CALLBACK_DATA = "no_reason"
OPTION_CALLBACK_PREFIX = "opt_"
CUSTOM_INPUT_CALLBACK_DATA = "custom_input"


class TelegramProvider(ChatProvider):
    """
    Messaging over the Telegram Bot API.

    Decisions arrive as inline keyboard callback queries; reasons and replies
    arrive as chat messages. Updates are pulled with getUpdates long polling.
    """

    name = "telegram"

    def __init__(
        self,
        settings: Settings,
        store: Optional[StateStore] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            settings: Resolved configuration
            store: State store for the expired-prompt registry
            client: Optional preconfigured HTTP client (tests use MockTransport)
        """
        self.settings = settings
        self.base_url = f"{API_BASE_URL}/bot{settings.bot_token}"
        self._client = client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._expired = ExpiredPromptRegistry(store)
        self.last_update_id = 0
        self.bot_username = ""
        self._last_sent_message_id: Optional[int] = None

    @property
    def permission_chat_id(self) -> str:
        return self.settings.effective_permission_chat_id

    async def _call(
        self, method: str, payload: Dict[str, Any], timeout: Optional[float] = None
    ) -> Any:
        """
        Call a Bot API method and unwrap its result.

        Raises:
            ProviderError: On transport errors or a response with ok=false
        """
        try:
            response = await self._client.post(
                f"{self.base_url}/{method}",
                json=payload,
                timeout=timeout if timeout is not None else HTTP_TIMEOUT_SECONDS,
            )
            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{method} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(
                self.name, f"{method} returned invalid JSON", response.status_code
            ) from e

        if not data.get("ok"):
            raise ProviderError(
                self.name,
                data.get("description") or "Unknown error",
                response.status_code,
            )
        return data.get("result")

    async def _get_updates(self, timeout: int) -> List[Dict[str, Any]]:
        """Fetch updates after the last seen id, advancing the offset."""
        updates = await self._call(
            "getUpdates",
            {
                "offset": self.last_update_id + 1,
                "timeout": timeout,
                "allowed_updates": json.dumps(["message", "callback_query"]),
            },
            timeout=timeout + HTTP_TIMEOUT_SECONDS,
        )
        updates = updates or []
        if updates:
            self.last_update_id = max(update["update_id"] for update in updates)
        return updates

    async def _poll_updates(self, timeout: float) -> List[Dict[str, Any]]:
        """Long-poll for at most `timeout` seconds."""
        long_poll = min(int(timeout), LONG_POLL_SECONDS)
        started = time.monotonic()
        updates = await self._get_updates(long_poll)
        if not updates and long_poll == 0:
            # getUpdates only long-polls in whole seconds
            await asyncio.sleep(max(timeout - (time.monotonic() - started), 0.0))
        return updates

    async def _answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = True
        try:
            await self._call("answerCallbackQuery", payload)
        except ProviderError as e:
            logger.debug(f"answerCallbackQuery failed: {e}")

    def _is_bot_mentioned(self, message: Dict[str, Any], reply_ids: Iterable[int] = ()) -> bool:
        """Check whether a group message is addressed to the bot."""
        text = message.get("text") or ""
        entities = message.get("entities") or []
        has_mention = any(entity.get("type") == "mention" for entity in entities)
        if self.bot_username and has_mention and f"@{self.bot_username}" in text:
            return True

        reply_to = message.get("reply_to_message") or {}
        if self.bot_username and (reply_to.get("from") or {}).get("username") == self.bot_username:
            return True

        reply_to_id = reply_to.get("message_id")
        if reply_to_id is not None and reply_to_id in set(reply_ids):
            return True
        return False

    def _addressed_messages(
        self, updates: List[Dict[str, Any]], chat_id: str, reply_ids: Iterable[int] = ()
    ) -> List[Dict[str, Any]]:
        """Human messages in `chat_id` that are private or addressed to the bot."""
        reply_ids = list(reply_ids)
        messages = []
        for update in updates:
            message = update.get("message")
            if not message or str(message.get("chat", {}).get("id")) != str(chat_id):
                continue
            if (message.get("from") or {}).get("is_bot"):
                continue
            if message.get("chat", {}).get("type") == "private" or self._is_bot_mentioned(
                message, reply_ids
            ):
                messages.append(message)
        return messages

    async def get_info(self) -> Dict[str, str]:
        result = await self._call("getMe", {})
        self.bot_username = result.get("username", "")
        return {
            "name": f"Telegram (@{self.bot_username})",
            "identifier": f"@{self.bot_username}",
        }

    async def send_message(self, text: str, parse_mode: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"chat_id": self.settings.chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        result = await self._call("sendMessage", payload)
        self._last_sent_message_id = result.get("message_id")

    async def wait_for_reply(self, timeout: float) -> str:
        # Drop anything that arrived before the question was asked
        await self._get_updates(0)

        reply_ids = [self._last_sent_message_id] if self._last_sent_message_id else []
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("Timeout waiting for user response")
            updates = await self._poll_updates(remaining)
            messages = self._addressed_messages(updates, self.settings.chat_id, reply_ids)
            if messages:
                return messages[0].get("text") or "(no text)"

    async def _clear_buttons(self, chat_id: str, message_id: int) -> None:
        try:
            await self._call(
                "editMessageReplyMarkup",
                {
                    "chat_id": chat_id,
                    "message_id": message_id,
                    "reply_markup": {"inline_keyboard": []},
                },
            )
        except ProviderError as e:
            logger.debug(f"Could not remove buttons from {message_id}: {e}")

    async def _wait_for_typed_answer(self, chat_id: str, reply_ids: List[int], deadline: float) -> str:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("Timeout waiting for text input")
            updates = await self._poll_updates(remaining)
            messages = self._addressed_messages(updates, chat_id, reply_ids)
            if messages:
                return messages[0].get("text") or "(no text)"

    async def ask_options(self, text: str, labels: Sequence[str], timeout: float) -> str:
        """Ask with one inline button per option plus a custom-input button."""
        deadline = time.monotonic() + timeout
        chat_id = str(self.permission_chat_id)
        # Drop anything that arrived before the question was asked
        await self._get_updates(0)

        buttons = [
            {"text": label, "callback_data": f"{OPTION_CALLBACK_PREFIX}{index}"}
            for index, label in enumerate(labels)
        ]
        keyboard = [buttons[start:start + 2] for start in range(0, len(buttons), 2)]
        keyboard.append([{"text": "✏️ Custom input", "callback_data": CUSTOM_INPUT_CALLBACK_DATA}])
        result = await self._call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
                "reply_markup": {"inline_keyboard": keyboard},
            },
        )
        message_id = result["message_id"]

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("Timeout waiting for answer")
            updates = await self._poll_updates(remaining)

            for update in updates:
                query = update.get("callback_query")
                if not query:
                    continue
                message = query.get("message") or {}
                if str((message.get("chat") or {}).get("id")) != chat_id:
                    continue
                if message.get("message_id") != message_id:
                    continue

                await self._answer_callback_query(query["id"])
                data = query.get("data") or ""
                if data == CUSTOM_INPUT_CALLBACK_DATA:
                    prompt = await self._call(
                        "sendMessage", {"chat_id": chat_id, "text": "💬 Please type your answer:"}
                    )
                    answer = await self._wait_for_typed_answer(
                        chat_id, [message_id, prompt["message_id"]], deadline
                    )
                    await self._clear_buttons(chat_id, message_id)
                    return answer
                if data.startswith(OPTION_CALLBACK_PREFIX):
                    index = data[len(OPTION_CALLBACK_PREFIX):]
                    if index.isdigit() and int(index) < len(labels):
                        await self._clear_buttons(chat_id, message_id)
                        return labels[int(index)]

    async def send_decision_prompt(self, message: str, request_id: str) -> PromptHandle:
        result = await self._call(
            "sendMessage",
            {
                "chat_id": self.permission_chat_id,
                "text": message,
                "reply_markup": {"inline_keyboard": [DECISION_BUTTONS]},
            },
        )
        logger.debug(f"Sent permission prompt {result['message_id']} for {request_id}")
        return PromptHandle(
            request_id=request_id,
            chat_id=str(self.permission_chat_id),
            message_id=str(result["message_id"]),
            text=message,
        )

    async def _handle_stray_callback(self, query: Dict[str, Any], chat_id: str, message_id: str) -> None:
        """Answer a click on an expired prompt once; ignore everything else."""
        expired_request_id = self._expired.claim_notice(chat_id, message_id)
        if expired_request_id is not None:
            logger.info(f"Late response to expired request {expired_request_id}")
            await self._answer_callback_query(
                query["id"], f"Request {expired_request_id} has already expired."
            )

    async def poll_decision(self, prompt: PromptHandle, timeout: float) -> DecisionSignal:
        updates = await self._poll_updates(timeout)

        for update in updates:
            query = update.get("callback_query")
            if not query:
                continue
            message = query.get("message") or {}
            query_chat_id = str((message.get("chat") or {}).get("id"))
            query_message_id = str(message.get("message_id"))

            if query_chat_id != prompt.chat_id:
                continue

            # Only the prompt just sent counts; older prompts are stale
            if query_message_id != prompt.message_id:
                await self._handle_stray_callback(query, query_chat_id, query_message_id)
                continue

            await self._answer_callback_query(query["id"])
            signal = _DECISIONS_BY_DATA.get(query.get("data"))
            if signal is not None:
                return signal

        return DecisionSignal.NONE

    async def send_reason_prompt(
        self, prompt: PromptHandle, no_reason_keywords: Iterable[str]
    ) -> ReasonPromptHandle:
        keywords = list(no_reason_keywords)
        skip_keyword = keywords[0] if keywords else "no_reason"
        result = await self._call(
            "sendMessage",
            {
                "chat_id": prompt.chat_id,
                "text": (
                    f"✏️ Why was request {prompt.request_id} rejected?\n"
                    f"Reply with a reason, or tap '{skip_keyword}' to skip."
                ),
                "reply_to_message_id": int(prompt.message_id),
                # Inline so the skip also reaches the bot from group chats
                "reply_markup": {
                    "inline_keyboard": [
                        [{"text": f"⏭ {skip_keyword}", "callback_data": SKIP_REASON_CALLBACK_DATA}]
                    ]
                },
            },
        )
        return ReasonPromptHandle(prompt=prompt, message_id=str(result["message_id"]))

    async def poll_reason(self, reason_prompt: ReasonPromptHandle, timeout: float) -> ReasonReply:
        updates = await self._poll_updates(timeout)

        for update in updates:
            query = update.get("callback_query")
            if not query:
                continue
            message = query.get("message") or {}
            query_chat_id = str((message.get("chat") or {}).get("id"))
            query_message_id = str(message.get("message_id"))
            if (
                query_chat_id == reason_prompt.prompt.chat_id
                and query_message_id == reason_prompt.message_id
                and query.get("data") == SKIP_REASON_CALLBACK_DATA
            ):
                await self._answer_callback_query(query["id"])
                return ReasonReply.skip()
            await self._handle_stray_callback(query, query_chat_id, query_message_id)

        reply_ids = [int(reason_prompt.message_id), int(reason_prompt.prompt.message_id)]
        messages = self._addressed_messages(updates, reason_prompt.prompt.chat_id, reply_ids)
        if messages:
            return ReasonReply.from_text(messages[0].get("text") or "")
        return ReasonReply.none()

    async def _edit_prompt(self, prompt: PromptHandle, footer: str) -> None:
        await self._call(
            "editMessageText",
            {
                "chat_id": prompt.chat_id,
                "message_id": int(prompt.message_id),
                "text": f"{prompt.text}\n\n{footer}",
                "reply_markup": {"inline_keyboard": []},
            },
        )

    async def mark_expired(self, prompt: PromptHandle) -> None:
        self._expired.register(prompt)
        await self._edit_prompt(prompt, expired_notice(prompt.request_id))

    async def mark_resolved(self, prompt: PromptHandle, summary: str) -> None:
        await self._edit_prompt(prompt, summary)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

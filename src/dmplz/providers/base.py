"""Chat provider interface used by the negotiator and the MCP server.

Chat platforms only expose pull-style update queries, so every wait is a
bounded poll: `poll_decision` and `poll_reason` block for at most the slice they
are given and report "nothing yet" when it runs out.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence

from loguru import logger

from ..store import StateStore

EXPIRED_PROMPT_TABLE = "expired-prompt"
EXPIRED_PROMPT_TTL_SECONDS = 24 * 60 * 60


class DecisionSignal(str, Enum):
    """Result of one decision poll."""

    APPROVE = "approve"
    APPROVE_SESSION = "approve_session"
    REJECT = "reject"
    NONE = "none"


class ReasonReplyKind(str, Enum):
    TEXT = "text"
    EXPLICIT_SKIP = "explicit_skip"
    NONE = "none"


@dataclass(frozen=True)
class ReasonReply:
    """Result of one reason poll."""

    kind: ReasonReplyKind
    text: str = ""

    @classmethod
    def none(cls) -> "ReasonReply":
        return cls(ReasonReplyKind.NONE)

    @classmethod
    def skip(cls) -> "ReasonReply":
        return cls(ReasonReplyKind.EXPLICIT_SKIP)

    @classmethod
    def from_text(cls, text: str) -> "ReasonReply":
        return cls(ReasonReplyKind.TEXT, text)


@dataclass
class PromptHandle:
    """
    A decision prompt that was delivered to the operator.

    Attributes:
        request_id: Permission request the prompt belongs to
        chat_id: Chat/channel the prompt lives in
        message_id: Platform message id; only signals for this id are honored
        text: Original prompt text, reused when the message is edited
        sent_at: Epoch seconds when the prompt was sent
    """

    request_id: str
    chat_id: str
    message_id: str
    text: str
    sent_at: float = field(default_factory=time.time)


@dataclass
class ReasonPromptHandle:
    """A rejection reason prompt, tied to its decision prompt."""

    prompt: PromptHandle
    message_id: str
    sent_at: float = field(default_factory=time.time)


class ChatProvider(ABC):
    """
    Abstract base class for messaging providers.

    Providers implement the permission round trip (decision prompt, reason
    prompt, prompt annotation) and the plain message/reply flow used by the
    MCP tools. All methods are async network calls.
    """

    name: str = "chat"

    @abstractmethod
    async def get_info(self) -> Dict[str, str]:
        """
        Fetch bot identity.

        Returns:
            Dict with "name" and "identifier"

        Raises:
            ProviderError: On API failure
        """

    @abstractmethod
    async def send_message(self, text: str, parse_mode: Optional[str] = None) -> None:
        """Send a plain message to the default chat."""

    @abstractmethod
    async def wait_for_reply(self, timeout: float) -> str:
        """
        Wait for the operator's next message in the default chat.

        Raises:
            TimeoutError: If no reply arrived within `timeout` seconds
            ProviderError: On API failure
        """

    @abstractmethod
    async def send_decision_prompt(self, message: str, request_id: str) -> PromptHandle:
        """
        Send the approve / approve-for-session / reject prompt.

        Raises:
            ProviderError: If the prompt could not be delivered
        """

    @abstractmethod
    async def poll_decision(self, prompt: PromptHandle, timeout: float) -> DecisionSignal:
        """
        Wait up to `timeout` seconds for a decision on this specific prompt.

        Signals addressed to other prompts, or produced by the bot itself,
        must be ignored.

        Raises:
            ProviderError: On API failure (the caller retries)
        """

    @abstractmethod
    async def send_reason_prompt(
        self, prompt: PromptHandle, no_reason_keywords: Iterable[str]
    ) -> ReasonPromptHandle:
        """
        Ask the operator why they rejected, offering a "no reason" affordance.

        Raises:
            ProviderError: If the prompt could not be delivered
        """

    @abstractmethod
    async def poll_reason(self, reason_prompt: ReasonPromptHandle, timeout: float) -> ReasonReply:
        """
        Wait up to `timeout` seconds for a reason reply.

        Raises:
            ProviderError: On API failure (the caller retries)
        """

    @abstractmethod
    async def mark_expired(self, prompt: PromptHandle) -> None:
        """Annotate the prompt as expired and disable its controls."""

    @abstractmethod
    async def mark_resolved(self, prompt: PromptHandle, summary: str) -> None:
        """Annotate the prompt with the final outcome and disable its controls."""

    async def ask_options(self, text: str, labels: Sequence[str], timeout: float) -> str:
        """
        Ask the operator to pick one of `labels` or type a free answer.

        Sends `text` (HTML) followed by a numbered-reply hint and maps a numeric
        reply to its label. Providers with buttons override this.

        Raises:
            TimeoutError: If no answer arrived within `timeout` seconds
            ProviderError: On API failure
        """
        await self.send_message(f"{text}\nReply with a number or type your answer:", parse_mode="HTML")
        reply = await self.wait_for_reply(timeout)
        return choose_option(reply, labels)

    async def aclose(self) -> None:
        """Release network resources."""


def choose_option(reply: str, labels: Sequence[str]) -> str:
    """Map a 1-based option number to its label; anything else is a free answer."""
    answer = reply.strip()
    if answer.isdigit() and 1 <= int(answer) <= len(labels):
        return labels[int(answer) - 1]
    return answer


def expired_notice(request_id: str) -> str:
    return f"⌛ Request {request_id} expired. Late responses are ignored."


class ExpiredPromptRegistry:
    """
    Remembers prompts that expired so a late response gets one notice.

    After a prompt is marked expired, the first stray input addressed to it is
    answered with an "already expired" notice; anything after that is ignored.
    """

    def __init__(self, store: Optional[StateStore]):
        self.store = store

    @staticmethod
    def _key(chat_id: str, message_id: str) -> str:
        return f"{chat_id}-{message_id}"

    def register(self, prompt: PromptHandle) -> None:
        if self.store is None:
            return
        try:
            self.store.write(
                EXPIRED_PROMPT_TABLE,
                self._key(prompt.chat_id, prompt.message_id),
                {"request_id": prompt.request_id, "notified": False},
            )
        except OSError as e:
            logger.warning(f"Failed to register expired prompt {prompt.message_id}: {e}")

    def claim_notice(self, chat_id: str, message_id: str) -> Optional[str]:
        """
        Claim the one late-response notice for an expired prompt.

        Returns:
            The expired request id if a notice should be sent, else None
        """
        if self.store is None:
            return None
        key = self._key(chat_id, message_id)
        record: Optional[Dict[str, Any]] = self.store.read(
            EXPIRED_PROMPT_TABLE, key, ttl_seconds=EXPIRED_PROMPT_TTL_SECONDS
        )
        if record is None or record.get("notified"):
            return None

        record["notified"] = True
        try:
            self.store.write(EXPIRED_PROMPT_TABLE, key, record)
        except OSError as e:
            logger.warning(f"Failed to update expired prompt {message_id}: {e}")
        return str(record.get("request_id", ""))

"""Pytest fixtures and test utilities for the DM-Plz test suite."""

import asyncio
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from dmplz.config import Settings
from dmplz.errors import ProviderError
from dmplz.permission.cascade import CascadeStore
from dmplz.permission.lock import UserLock
from dmplz.permission.models import LockKey
from dmplz.permission.negotiator import PermissionNegotiator
from dmplz.permission.reject_log import RejectionLog
from dmplz.permission.session_cache import SessionCache
from dmplz.providers.base import (
    ChatProvider,
    DecisionSignal,
    PromptHandle,
    ReasonPromptHandle,
    ReasonReply,
)
from dmplz.store import StateStore


# ============================================================================
# FAKE PROVIDER
# ============================================================================


class FakeChatProvider(ChatProvider):
    """
    Scripted provider for negotiator tests.

    Decisions and reason replies are handed out one per poll once the
    configured delay has passed; an empty script waits out the poll slice.
    Entries may be ProviderError instances, which are raised instead.
    """

    name = "telegram"

    def __init__(
        self,
        decisions: Iterable = (),
        reasons: Iterable = (),
        decision_delay: float = 0.0,
        reason_delay: float = 0.0,
        events: Optional[List] = None,
        fail_decision_prompt: bool = False,
        fail_reason_prompt: bool = False,
    ):
        self.decisions = list(decisions)
        self.reasons = list(reasons)
        self.decision_delay = decision_delay
        self.reason_delay = reason_delay
        self.events = events if events is not None else []
        self.fail_decision_prompt = fail_decision_prompt
        self.fail_reason_prompt = fail_reason_prompt

        self.prompts: List[PromptHandle] = []
        self.reason_prompts: List[ReasonPromptHandle] = []
        self.expired: List[PromptHandle] = []
        self.resolved: List[Dict[str, str]] = []
        self.messages: List[str] = []
        self.replies: List[str] = []
        self.decision_poll_timeouts: List[float] = []
        self.reason_poll_timeouts: List[float] = []
        self.closed = False
        self._decision_ready_at = 0.0
        self._reason_ready_at = 0.0

    def _record(self, event: str) -> None:
        self.events.append((event, time.monotonic()))

    async def get_info(self) -> Dict[str, str]:
        return {"name": "Fake (@fake_bot)", "identifier": "@fake_bot"}

    async def send_message(self, text: str, parse_mode: Optional[str] = None) -> None:
        self.messages.append(text)

    async def wait_for_reply(self, timeout: float) -> str:
        if not self.replies:
            raise TimeoutError("Timeout waiting for user response")
        return self.replies.pop(0)

    async def send_decision_prompt(self, message: str, request_id: str) -> PromptHandle:
        if self.fail_decision_prompt:
            raise ProviderError(self.name, "sendMessage failed", 500)
        prompt = PromptHandle(
            request_id=request_id,
            chat_id="123",
            message_id=str(len(self.prompts) + 1),
            text=message,
        )
        self.prompts.append(prompt)
        self._decision_ready_at = time.monotonic() + self.decision_delay
        self._record("prompt")
        return prompt

    async def poll_decision(self, prompt: PromptHandle, timeout: float) -> DecisionSignal:
        self.decision_poll_timeouts.append(timeout)
        wait = self._decision_ready_at - time.monotonic()
        if wait > 0:
            await asyncio.sleep(min(wait, timeout))
            if wait > timeout:
                return DecisionSignal.NONE

        if not self.decisions:
            await asyncio.sleep(timeout)
            return DecisionSignal.NONE

        decision = self.decisions.pop(0)
        if isinstance(decision, Exception):
            raise decision
        self._record(f"decision:{decision.value}")
        return decision

    async def send_reason_prompt(
        self, prompt: PromptHandle, no_reason_keywords: Iterable[str]
    ) -> ReasonPromptHandle:
        if self.fail_reason_prompt:
            raise ProviderError(self.name, "sendMessage failed", 500)
        reason_prompt = ReasonPromptHandle(prompt=prompt, message_id=f"{prompt.message_id}-reason")
        self.reason_prompts.append(reason_prompt)
        self._reason_ready_at = time.monotonic() + self.reason_delay
        return reason_prompt

    async def poll_reason(self, reason_prompt: ReasonPromptHandle, timeout: float) -> ReasonReply:
        self.reason_poll_timeouts.append(timeout)
        wait = self._reason_ready_at - time.monotonic()
        if wait > 0:
            await asyncio.sleep(min(wait, timeout))
            if wait > timeout:
                return ReasonReply.none()

        if not self.reasons:
            await asyncio.sleep(timeout)
            return ReasonReply.none()

        reply = self.reasons.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def mark_expired(self, prompt: PromptHandle) -> None:
        self.expired.append(prompt)
        self._record("expired")

    async def mark_resolved(self, prompt: PromptHandle, summary: str) -> None:
        self.resolved.append({"message_id": prompt.message_id, "summary": summary})
        self._record("resolved")

    async def aclose(self) -> None:
        self.closed = True


# ============================================================================
# STATE FIXTURES
# ============================================================================


@pytest.fixture
def state_store(tmp_path) -> StateStore:
    """State store rooted in a per-test directory."""
    return StateStore(tmp_path / "state")


@pytest.fixture
def lock_key() -> LockKey:
    return LockKey(provider="telegram", chat_id="123")


@pytest.fixture
def log_path(tmp_path) -> Path:
    return tmp_path / "logs" / "rejections.jsonl"


@pytest.fixture
def settings(tmp_path, log_path) -> Settings:
    """Telegram settings with all state under tmp_path."""
    return Settings(
        provider="telegram",
        bot_token="123456:TEST",
        chat_id="123",
        reject_reason_log_path=log_path,
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def make_negotiator(state_store, lock_key, log_path):
    """
    Factory for negotiators with short poll slices and test-sized timeouts.

    Keyword overrides are passed straight to PermissionNegotiator; use
    `cascade_window` to change the cascade window.
    """

    def _make(provider: ChatProvider, cascade_window: float = 5.0, **overrides):
        options = dict(
            provider=provider,
            lock_key=lock_key,
            user_lock=UserLock(state_store, poll_interval=0.02),
            cascade=CascadeStore(state_store, cascade_window),
            session_cache=SessionCache(state_store),
            reject_log=RejectionLog(log_path, rotate_bytes=1024 * 1024, max_files=3),
            reject_reason_timeout=5.0,
            reject_reason_max_chars=300,
            no_reason_keywords=("no_reason",),
            poll_slice=0.05,
            error_backoff=0.01,
        )
        options.update(overrides)
        return PermissionNegotiator(**options)

    return _make

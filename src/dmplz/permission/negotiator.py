"""Permission negotiation state machine.

Drives one permission request from lock acquisition to a terminal decision:

    RECEIVED -> APPROVED (session allow-list hit)
    RECEIVED -> WAITING_LOCK -> CASCADE_REJECTED | LOCK_TIMEOUT | WAITING_DECISION
    WAITING_DECISION -> APPROVED | APPROVED_SESSION | WAITING_REASON | EXPIRED
    WAITING_REASON -> REJECTED_WITH_REASON | REJECTED_NO_REASON | EXPIRED

Every wait is carved out of the time remaining to the request deadline.
"""

import asyncio
import time
from typing import Awaitable, Iterable, List, Optional, Tuple

from loguru import logger

from ..config import Settings
from ..errors import DecisionExpired, LockTimeout, LogWriteError, ProviderError
from ..providers.base import (
    ChatProvider,
    DecisionSignal,
    PromptHandle,
    ReasonReplyKind,
)
from ..store import StateStore
from .cascade import CascadeStore
from .lock import UserLock
from .models import (
    CascadeState,
    Decision,
    LockKey,
    NegotiationOutcome,
    NegotiationState,
    PermissionRequest,
    RejectReasonSource,
    TERMINAL_STATES,
    can_transition,
)
from .prompt import create_permission_message
from .reason import is_no_reason_keyword, normalize_reason, resolve_reason_source
from .reject_log import RejectionLog, RejectLogEntry
from .session_cache import SessionCache

POLL_SLICE_SECONDS = 10.0
ERROR_BACKOFF_SECONDS = 1.0
# Time kept back from the decision wait so the prompt can still be annotated
ANNOTATION_RESERVE_SECONDS = 1.0


class Negotiation:
    """Current state of one negotiation, advanced through the transition table."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.state = NegotiationState.RECEIVED
        self.history: List[NegotiationState] = [self.state]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: NegotiationState) -> None:
        """
        Raises:
            RuntimeError: If the transition is not in the table
        """
        if not can_transition(self.state, target):
            raise RuntimeError(
                f"Illegal negotiation transition {self.state.value} -> {target.value} "
                f"for {self.request_id}"
            )
        logger.debug(f"[{self.request_id}] {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)


def create_lock_key(settings: Settings) -> LockKey:
    """Lock key for the operator that receives this configuration's prompts."""
    return LockKey(
        provider=settings.provider,
        chat_id=settings.effective_permission_chat_id,
        user_id=settings.discord_dm_user_id,
    )


class PermissionNegotiator:
    """
    Orchestrates permission requests for one operator.

    Holds the user lock for the whole round trip, auto-rejects during the
    cascade window, writes the rejection log before the cascade state, and
    always releases the lock last.
    """

    def __init__(
        self,
        provider: ChatProvider,
        lock_key: LockKey,
        user_lock: UserLock,
        cascade: CascadeStore,
        session_cache: SessionCache,
        reject_log: RejectionLog,
        reject_reason_timeout: float,
        reject_reason_max_chars: int,
        no_reason_keywords: Iterable[str],
        poll_slice: float = POLL_SLICE_SECONDS,
        error_backoff: float = ERROR_BACKOFF_SECONDS,
        annotation_reserve: float = ANNOTATION_RESERVE_SECONDS,
    ):
        self.provider = provider
        self.lock_key = lock_key
        self.user_lock = user_lock
        self.cascade = cascade
        self.session_cache = session_cache
        self.reject_log = reject_log
        self.reject_reason_timeout = reject_reason_timeout
        self.reject_reason_max_chars = reject_reason_max_chars
        self.no_reason_keywords = tuple(no_reason_keywords)
        self.poll_slice = poll_slice
        self.error_backoff = error_backoff
        self.annotation_reserve = annotation_reserve

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: ChatProvider,
        store: Optional[StateStore] = None,
    ) -> "PermissionNegotiator":
        """Wire a negotiator from configuration."""
        store = store or StateStore(settings.state_dir)
        return cls(
            provider=provider,
            lock_key=create_lock_key(settings),
            user_lock=UserLock(store),
            cascade=CascadeStore(store, settings.cascade_window),
            session_cache=SessionCache(store),
            reject_log=RejectionLog(
                settings.reject_reason_log_path,
                rotate_bytes=settings.reject_reason_log_rotate_bytes,
                max_files=settings.reject_reason_log_max_files,
            ),
            reject_reason_timeout=settings.reject_reason_timeout,
            reject_reason_max_chars=settings.reject_reason_max_chars,
            no_reason_keywords=settings.no_reason_keywords,
        )

    @property
    def provider_name(self) -> str:
        return self.lock_key.provider

    async def negotiate(
        self, request: PermissionRequest, message: Optional[str] = None
    ) -> NegotiationOutcome:
        """
        Run one permission request to a terminal decision.

        Args:
            request: Request to negotiate
            message: Prompt text (defaults to the standard permission message)

        Returns:
            APPROVE, APPROVE_SESSION or REJECT outcome

        Raises:
            LockTimeout: Another negotiation held the lock until the deadline
            DecisionExpired: The operator did not answer before the deadline
            ProviderError: The decision prompt could not be delivered
        """
        negotiation = Negotiation(request.request_id)

        if self.session_cache.is_allowed(request.session_id, request.tool_name):
            negotiation.transition(NegotiationState.APPROVED)
            logger.info(f'Tool "{request.tool_name}" auto-approved (session cache)')
            return NegotiationOutcome(
                decision=Decision.APPROVE,
                request_id=request.request_id,
                state=negotiation.state,
                prompted=False,
            )

        negotiation.transition(NegotiationState.WAITING_LOCK)
        try:
            handle = await self.user_lock.acquire(
                self.lock_key, request.remaining(), request.request_id
            )
        except LockTimeout:
            negotiation.transition(NegotiationState.LOCK_TIMEOUT)
            logger.warning(f"[{request.request_id}] Timed out waiting for lock {self.lock_key}")
            raise

        try:
            cascade_state = self.cascade.read(self.lock_key)
            if cascade_state is not None:
                negotiation.transition(NegotiationState.CASCADE_REJECTED)
                return await self._cascade_reject(request, cascade_state)

            negotiation.transition(NegotiationState.WAITING_DECISION)
            return await self._run_prompt(
                negotiation, request, message or create_permission_message(request)
            )
        finally:
            handle.release()

    async def _cascade_reject(
        self, request: PermissionRequest, cascade_state: CascadeState
    ) -> NegotiationOutcome:
        logger.info(
            f'Cascade reject for tool "{request.tool_name}" '
            f"(source: {cascade_state.reason_source.value}, "
            f"after {cascade_state.request_id})"
        )
        await self._append_reject_log(
            request, cascade_state.reason, cascade_state.reason_source
        )
        return NegotiationOutcome(
            decision=Decision.REJECT,
            request_id=request.request_id,
            state=NegotiationState.CASCADE_REJECTED,
            reason=cascade_state.reason,
            reason_source=cascade_state.reason_source,
            prompted=False,
        )

    async def _run_prompt(
        self, negotiation: Negotiation, request: PermissionRequest, message: str
    ) -> NegotiationOutcome:
        reserve = min(self.annotation_reserve, request.remaining() * 0.1)
        prompt = await self._send_decision_prompt(negotiation, request, message, reserve)

        signal = await self._wait_for_decision(prompt, request.deadline - reserve)

        if signal == DecisionSignal.NONE:
            negotiation.transition(NegotiationState.EXPIRED)
            logger.warning(f"[{request.request_id}] Permission request expired")
            await self._best_effort(
                self.provider.mark_expired(prompt), request, "mark prompt expired"
            )
            raise DecisionExpired(request.request_id)

        if signal == DecisionSignal.APPROVE:
            negotiation.transition(NegotiationState.APPROVED)
            self.cascade.clear(self.lock_key)
            logger.info(f'Tool "{request.tool_name}" approved')
            await self._best_effort(
                self.provider.mark_resolved(prompt, "✅ Approved"), request, "mark prompt resolved"
            )
            return NegotiationOutcome(
                decision=Decision.APPROVE, request_id=request.request_id, state=negotiation.state
            )

        if signal == DecisionSignal.APPROVE_SESSION:
            negotiation.transition(NegotiationState.APPROVED_SESSION)
            self.session_cache.record_allowed(request.session_id, request.tool_name)
            self.cascade.clear(self.lock_key)
            logger.info(
                f'Tool "{request.tool_name}" added to session cache (session: {request.session_id})'
            )
            await self._best_effort(
                self.provider.mark_resolved(prompt, "🔄 Allowed for this session"),
                request,
                "mark prompt resolved",
            )
            return NegotiationOutcome(
                decision=Decision.APPROVE_SESSION,
                request_id=request.request_id,
                state=negotiation.state,
            )

        negotiation.transition(NegotiationState.WAITING_REASON)
        raw_reason, reason_source = await self._collect_reason(prompt, request, reserve)
        return await self._reject(negotiation, request, prompt, raw_reason, reason_source)

    async def _send_decision_prompt(
        self,
        negotiation: Negotiation,
        request: PermissionRequest,
        message: str,
        reserve: float,
    ) -> PromptHandle:
        """
        Deliver the decision prompt, leaving `reserve` seconds before the deadline.

        Raises:
            DecisionExpired: The send did not finish in time
            ProviderError: The provider refused the prompt
        """
        budget = request.remaining() - reserve
        if budget > 0:
            try:
                return await asyncio.wait_for(
                    self.provider.send_decision_prompt(message, request.request_id),
                    timeout=budget,
                )
            except asyncio.TimeoutError:
                pass
        negotiation.transition(NegotiationState.EXPIRED)
        logger.warning(f"[{request.request_id}] Ran out of time sending the permission prompt")
        raise DecisionExpired(request.request_id)

    async def _reject(
        self,
        negotiation: Negotiation,
        request: PermissionRequest,
        prompt: PromptHandle,
        raw_reason: str,
        reason_source: RejectReasonSource,
    ) -> NegotiationOutcome:
        reason = normalize_reason(raw_reason, self.reject_reason_max_chars)
        reason_source = resolve_reason_source(reason, reason_source)

        if reason_source == RejectReasonSource.USER_INPUT:
            negotiation.transition(NegotiationState.REJECTED_WITH_REASON)
        else:
            negotiation.transition(NegotiationState.REJECTED_NO_REASON)

        logger.info(
            f'Tool "{request.tool_name}" rejected (source: {reason_source.value}) '
            f"with reason: {reason}"
        )

        # Log first so the stop hook can read the reason, then arm the cascade
        await self._append_reject_log(request, reason, reason_source)
        try:
            self.cascade.write(
                self.lock_key,
                CascadeState(
                    reason=reason,
                    reason_source=reason_source,
                    request_id=request.request_id,
                    tool_name=request.tool_name,
                ),
            )
        except OSError as e:
            logger.warning(f"Failed to write cascade state for {self.lock_key}: {e}")

        summary = f"❌ Rejected: {reason}" if reason else "❌ Rejected"
        await self._best_effort(
            self.provider.mark_resolved(prompt, summary), request, "mark prompt resolved"
        )
        return NegotiationOutcome(
            decision=Decision.REJECT,
            request_id=request.request_id,
            state=negotiation.state,
            reason=reason,
            reason_source=reason_source,
        )

    async def _wait_for_decision(self, prompt: PromptHandle, until: float) -> DecisionSignal:
        """Poll in slices until a decision arrives or `until` (monotonic) passes."""
        while True:
            remaining = until - time.monotonic()
            if remaining <= 0:
                return DecisionSignal.NONE
            try:
                signal = await asyncio.wait_for(
                    self.provider.poll_decision(prompt, min(remaining, self.poll_slice)),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return DecisionSignal.NONE
            except ProviderError as e:
                logger.warning(f"[{prompt.request_id}] Decision poll failed: {e}")
                await asyncio.sleep(min(self.error_backoff, max(until - time.monotonic(), 0.0)))
                continue
            if signal != DecisionSignal.NONE:
                return signal

    async def _collect_reason(
        self, prompt: PromptHandle, request: PermissionRequest, reserve: float
    ) -> Tuple[str, RejectReasonSource]:
        """
        Run the reason sub-dialog inside min(reason timeout, remaining time).

        Returns:
            Raw reason text and its source
        """
        budget = min(self.reject_reason_timeout, max(request.remaining() - reserve, 0.0))
        until = time.monotonic() + budget
        if budget <= 0:
            return "", RejectReasonSource.TIMEOUT

        try:
            reason_prompt = await asyncio.wait_for(
                self.provider.send_reason_prompt(prompt, self.no_reason_keywords),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            return "", RejectReasonSource.TIMEOUT
        except ProviderError as e:
            logger.warning(f"[{request.request_id}] Reason prompt failed, skipping reason: {e}")
            return "", RejectReasonSource.EXPLICIT_SKIP

        while True:
            remaining = until - time.monotonic()
            if remaining <= 0:
                return "", RejectReasonSource.TIMEOUT
            try:
                reply = await asyncio.wait_for(
                    self.provider.poll_reason(reason_prompt, min(remaining, self.poll_slice)),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return "", RejectReasonSource.TIMEOUT
            except ProviderError as e:
                logger.warning(f"[{request.request_id}] Reason poll failed: {e}")
                await asyncio.sleep(min(self.error_backoff, max(until - time.monotonic(), 0.0)))
                continue

            if reply.kind == ReasonReplyKind.EXPLICIT_SKIP:
                return "", RejectReasonSource.EXPLICIT_SKIP
            if reply.kind == ReasonReplyKind.TEXT:
                if is_no_reason_keyword(reply.text, self.no_reason_keywords):
                    return "", RejectReasonSource.EXPLICIT_SKIP
                return reply.text, RejectReasonSource.USER_INPUT

    async def _append_reject_log(
        self, request: PermissionRequest, reason: str, reason_source: RejectReasonSource
    ) -> None:
        """Append a rejection entry within the remaining time. Failures never change the decision."""
        entry = RejectLogEntry(
            provider=self.provider_name,
            request_id=request.request_id,
            tool_name=request.tool_name,
            cwd=request.cwd,
            reason=reason,
            reason_source=reason_source,
        )
        remaining = max(request.remaining(), 0.0)
        budget = remaining - min(self.annotation_reserve, remaining * 0.1)
        try:
            await self.reject_log.append(entry, timeout=budget)
        except (LogWriteError, OSError) as e:
            logger.error(f"Reject log append failed: {e}")

    async def _best_effort(
        self, action: Awaitable[None], request: PermissionRequest, description: str
    ) -> None:
        """Run a prompt annotation within the remaining time; never raise."""
        remaining = request.remaining()
        if remaining <= 0:
            # Close the coroutine so it is not reported as never awaited
            getattr(action, "close", lambda: None)()
            logger.debug(f"[{request.request_id}] No time left to {description}")
            return
        try:
            await asyncio.wait_for(action, timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(f"[{request.request_id}] Timed out trying to {description}")
        except Exception as e:
            logger.warning(f"[{request.request_id}] Failed to {description}: {e}")

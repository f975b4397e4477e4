"""PermissionRequest hook.

Reads the Claude Code permission request from stdin, negotiates it with the
operator over chat, and prints the hook decision JSON on stdout.
"""

import asyncio
import json
import os
import sys
from typing import Any, Dict, Mapping, Optional, TextIO

from loguru import logger

from ..config import Config, Settings
from ..errors import ConfigError, NoDecision, ProviderError
from ..logging_config import configure_logging
from ..permission.models import NegotiationState, PermissionRequest
from ..permission.negotiator import PermissionNegotiator
from ..permission.reason import build_deny_message, build_rejection_system_message
from ..providers import ChatProvider, create_provider
from ..store import StateStore

HOOK_EVENT_NAME = "PermissionRequest"
DEFAULT_DENY_MESSAGE = "User rejected the request."

# Answered through dmplz-question-hook, never prompted for here
AUTO_APPROVED_TOOLS = ("AskUserQuestion",)


def build_output(
    approved: bool,
    message: Optional[str] = None,
    system_message: Optional[str] = None,
) -> Dict[str, Any]:
    """Hook output in the shape Claude Code expects."""
    decision: Dict[str, Any] = {"behavior": "allow" if approved else "deny"}
    if not approved:
        decision["message"] = message or DEFAULT_DENY_MESSAGE

    output: Dict[str, Any] = {
        "hookSpecificOutput": {"hookEventName": HOOK_EVENT_NAME, "decision": decision}
    }
    if system_message:
        output["systemMessage"] = system_message
    return output


def no_decision_output(behavior: str, detail: str) -> Dict[str, Any]:
    """Output for a negotiation that ended without an operator decision."""
    if behavior == "deny":
        return build_output(False, f"No permission decision was made ({detail}).")
    return build_output(True)


def parse_payload(raw: str) -> Dict[str, Any]:
    """
    Raises:
        ValueError: If the input is not a JSON object with a tool_name
    """
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Hook input must be a JSON object")
    if not payload.get("tool_name"):
        raise ValueError("Hook input is missing tool_name")
    return payload


async def handle_request(
    payload: Mapping[str, Any],
    settings: Settings,
    provider: Optional[ChatProvider] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Negotiate one permission request and build the hook output.

    Non-decisions (lock timeout, expiry) and provider failures follow
    `settings.no_decision_behavior`.
    """
    store = StateStore(settings.state_dir)
    provider = provider or create_provider(settings, store=store)

    request = PermissionRequest.create(
        tool_name=payload["tool_name"],
        tool_input=payload.get("tool_input"),
        cwd=payload.get("cwd") or os.getcwd(),
        timeout_seconds=settings.question_timeout,
        request_id=payload.get("tool_use_id"),
        session_id=payload.get("session_id"),
        environ=environ,
    )
    logger.info(f"Session ID: {request.session_id}, Tool: {request.tool_name}")

    negotiator = PermissionNegotiator.from_settings(settings, provider, store=store)
    try:
        if not negotiator.session_cache.is_allowed(request.session_id, request.tool_name):
            # Telegram needs its username for mention detection
            await provider.get_info()
        outcome = await negotiator.negotiate(request)
    except NoDecision as e:
        logger.warning(
            f"No decision for {e.request_id}: {e} "
            f"(applying no-decision behavior: {settings.no_decision_behavior})"
        )
        return no_decision_output(settings.no_decision_behavior, str(e))
    except ProviderError as e:
        logger.error(
            f"Provider failure for {request.request_id}: {e} "
            f"(applying no-decision behavior: {settings.no_decision_behavior})"
        )
        return no_decision_output(settings.no_decision_behavior, "provider error")
    finally:
        await provider.aclose()

    if outcome.approved:
        return build_output(True)

    deny_message = build_deny_message(outcome.reason, outcome.reason_source)
    if outcome.state == NegotiationState.CASCADE_REJECTED:
        return build_output(False, deny_message)
    return build_output(
        False,
        deny_message,
        build_rejection_system_message(outcome.reason, outcome.reason_source),
    )


async def run_hook(raw_input: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Full hook run: parse, configure, negotiate. Never raises."""
    env = os.environ if environ is None else environ
    # Known up front so configuration errors still honor it
    behavior = (
        env.get("DMPLZ_NO_DECISION_BEHAVIOR", Config.DEFAULT_NO_DECISION_BEHAVIOR).strip().lower()
    )
    try:
        payload = parse_payload(raw_input)

        if payload["tool_name"] in AUTO_APPROVED_TOOLS:
            return build_output(True)

        settings = Config.load(environ)
        Config.validate(settings)
        configure_logging(settings.log_level, settings.log_file)

        return await handle_request(payload, settings, environ=environ)
    except ConfigError as e:
        logger.error(f"Permission hook configuration error (behavior: {behavior}): {e}")
        return no_decision_output(behavior, "configuration error")
    except Exception as e:
        logger.exception(f"Permission hook error (behavior: {behavior}): {e}")
        return no_decision_output(behavior, "hook error")


def main(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
    """Console entry point for `dmplz-permission-hook`."""
    configure_logging()
    raw_input = (stdin or sys.stdin).read()
    output = asyncio.run(run_hook(raw_input))
    out = stdout or sys.stdout
    out.write(json.dumps(output) + "\n")
    out.flush()


if __name__ == "__main__":
    main()

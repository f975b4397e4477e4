"""Stop hook.

When the agent stops, sends the operator a short work summary and waits for
the next instruction. A reply is handed back to Claude Code as a blocking
decision, so the agent continues with the reply as its new instruction.
"""

import asyncio
import html
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, TextIO

from loguru import logger

from ..config import Config, Settings
from ..logging_config import configure_logging
from ..permission.reject_log import RejectionLog
from ..providers import ChatProvider, create_provider

TRANSCRIPT_TAIL_LINES = 50
MAX_LISTED_ITEMS = 5
LAST_MESSAGE_CHARS = 200
FILE_TOOLS = ("Write", "Edit", "Read")
# Rejections older than this belong to an earlier turn
RECENT_REJECTION_SECONDS = 10 * 60


@dataclass
class WorkSummary:
    """What the agent did in the last stretch of the transcript."""

    tools: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    last_message: str = ""

    def lines(self) -> List[str]:
        lines = []
        if self.tools:
            lines.append(f"🔧 Tools used: {html.escape(', '.join(self.tools[:MAX_LISTED_ITEMS]))}")
        if self.files:
            lines.append(f"📁 Files touched: {html.escape(', '.join(self.files[:MAX_LISTED_ITEMS]))}")
        if self.last_message:
            message = self.last_message
            if len(message) > LAST_MESSAGE_CHARS:
                message = message[:LAST_MESSAGE_CHARS] + "..."
            lines.append(f"💬 Last response: {html.escape(message)}")
        return lines


def _add_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)


def extract_recent_work(transcript_path: Path, max_lines: int = TRANSCRIPT_TAIL_LINES) -> WorkSummary:
    """
    Summarize the tail of a JSONL transcript.

    Unreadable files and malformed lines yield an empty or partial summary.
    """
    summary = WorkSummary()
    try:
        lines = Path(transcript_path).read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.debug(f"Transcript unavailable ({transcript_path}): {e}")
        return summary

    for line in [line for line in lines if line.strip()][-max_lines:]:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        content = (entry.get("message") or {}).get("content")
        if not isinstance(content, list):
            continue

        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                summary.last_message = block["text"]
            elif block.get("type") == "tool_use" and block.get("name"):
                _add_unique(summary.tools, block["name"])
                tool_input = block.get("input")
                if not isinstance(tool_input, dict):
                    tool_input = {}
                file_path = tool_input.get("file_path") or tool_input.get("filePath")
                if block["name"] in FILE_TOOLS and isinstance(file_path, str):
                    _add_unique(summary.files, Path(file_path.replace("\\", "/")).name)
    return summary


def latest_rejection(settings: Settings, cwd: Optional[str]) -> Optional[Dict[str, Any]]:
    """Most recent rejection for `cwd`, if it happened within the recent window."""
    log = RejectionLog(
        settings.reject_reason_log_path,
        rotate_bytes=settings.reject_reason_log_rotate_bytes,
        max_files=settings.reject_reason_log_max_files,
    )
    try:
        entries = log.read_entries(limit=1)
    except OSError as e:
        logger.debug(f"Rejection log unavailable: {e}")
        return None
    if not entries or entries[-1].get("cwd") != cwd:
        return None

    entry = entries[-1]
    try:
        logged_at = datetime.fromisoformat(entry["timestamp"])
    except (KeyError, TypeError, ValueError):
        return None
    if logged_at.tzinfo is None:
        logged_at = logged_at.replace(tzinfo=timezone.utc)
    age = (datetime.now(timezone.utc) - logged_at).total_seconds()
    return entry if age <= RECENT_REJECTION_SECONDS else None


def build_notification_message(payload: Optional[Mapping[str, Any]], settings: Settings) -> str:
    """HTML notification: completion notice, work summary, last rejection."""
    payload = payload or {}
    parts = ["🏁 <b>Work finished.</b>", ""]

    transcript_path = payload.get("transcript_path")
    if transcript_path:
        summary_lines = extract_recent_work(Path(transcript_path)).lines()
        if summary_lines:
            parts.append("📋 <b>Summary:</b>")
            parts.extend(summary_lines)
            parts.append("")

    rejection = latest_rejection(settings, payload.get("cwd"))
    if rejection is not None:
        reason = rejection.get("reason") or "no reason"
        parts.append(
            f"❌ Last rejection: {html.escape(str(rejection.get('tool_name')))} "
            f"({html.escape(reason)})"
        )
        parts.append("")

    parts.append("💬 Reply with the next instruction to continue:")
    return "\n".join(parts)


def build_continue_output(reply: str) -> Dict[str, Any]:
    """Block the stop; Claude Code passes `reason` to the agent as the next instruction."""
    return {"decision": "block", "reason": reply}


def parse_stop_payload(raw_input: str) -> Optional[Dict[str, Any]]:
    """Stop hook input, or None when it is empty or not a JSON object."""
    if not raw_input.strip():
        return None
    try:
        payload = json.loads(raw_input)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring unparseable stop hook input: {e}")
        return None
    return payload if isinstance(payload, dict) else None


async def notify_and_wait(
    payload: Optional[Mapping[str, Any]],
    settings: Settings,
    provider: Optional[ChatProvider] = None,
) -> Optional[str]:
    """
    Send the work summary and wait for a reply.

    Returns:
        The operator's reply, or None if none arrived within the question timeout

    Raises:
        ProviderError: On API failure
    """
    provider = provider or create_provider(settings)
    try:
        await provider.get_info()
        await provider.send_message(build_notification_message(payload, settings), parse_mode="HTML")
        try:
            reply = await provider.wait_for_reply(settings.question_timeout)
        except TimeoutError:
            logger.info("No instruction received; letting the agent stop")
            return None
    finally:
        await provider.aclose()
    return reply.strip() or None


async def run_hook(
    raw_input: str, environ: Optional[Mapping[str, str]] = None
) -> Optional[Dict[str, Any]]:
    """
    Full hook run. Never raises.

    Returns:
        Hook output that continues the agent, or None to let it stop
    """
    payload = parse_stop_payload(raw_input)
    try:
        settings = Config.load(environ)
        Config.validate(settings)
        configure_logging(settings.log_level, settings.log_file)

        reply = await notify_and_wait(payload, settings)
    except Exception as e:
        logger.error(f"Stop hook error: {e}")
        return None

    if reply is None:
        return None
    logger.info("Received next instruction; continuing the agent")
    return build_continue_output(reply)


def main(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
    """Console entry point for `dmplz-stop-hook`."""
    configure_logging()
    raw_input = (stdin or sys.stdin).read()
    output = asyncio.run(run_hook(raw_input))
    if output is not None:
        out = stdout or sys.stdout
        out.write(json.dumps(output) + "\n")
        out.flush()


if __name__ == "__main__":
    main()

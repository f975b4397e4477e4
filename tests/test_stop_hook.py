"""Tests for the Stop hook: work summary, notification and continuation."""

import io
import json
from dataclasses import replace

import pytest

from dmplz.hooks import stop
from dmplz.hooks.stop import (
    build_continue_output,
    build_notification_message,
    extract_recent_work,
    notify_and_wait,
    parse_stop_payload,
    run_hook,
)
from dmplz.permission.models import RejectReasonSource
from dmplz.permission.reject_log import RejectionLog, RejectLogEntry
from tests.conftest import FakeChatProvider


def _assistant(*blocks):
    return json.dumps({"type": "assistant", "message": {"role": "assistant", "content": list(blocks)}})


def _tool_use(name, **tool_input):
    return {"type": "tool_use", "name": name, "input": tool_input}


@pytest.fixture
def transcript(tmp_path):
    path = tmp_path / "transcript.jsonl"
    path.write_text(
        "\n".join(
            [
                json.dumps({"type": "user", "message": {"role": "user", "content": "fix the tests"}}),
                _assistant(_tool_use("Read", file_path="/work/src/app.py")),
                "not json",
                _assistant(
                    _tool_use("Edit", file_path="/work/src/app.py"),
                    _tool_use("Bash", command="pytest"),
                ),
                _assistant({"type": "text", "text": "All <3 tests pass & the fix is in."}),
            ]
        )
        + "\n"
    )
    return path


# ============================================================================
# SUMMARY
# ============================================================================


def test_extract_recent_work(transcript):
    summary = extract_recent_work(transcript)

    assert summary.tools == ["Read", "Edit", "Bash"]
    assert summary.files == ["app.py"]
    assert summary.last_message == "All <3 tests pass & the fix is in."


def test_extract_recent_work_only_reads_the_tail(transcript):
    summary = extract_recent_work(transcript, max_lines=1)

    assert summary.tools == []
    assert summary.last_message == "All <3 tests pass & the fix is in."


def test_extract_recent_work_missing_file(tmp_path):
    summary = extract_recent_work(tmp_path / "missing.jsonl")

    assert summary.lines() == []


def test_long_last_message_is_truncated():
    summary = stop.WorkSummary(last_message="x" * 250)

    assert summary.lines() == [f"💬 Last response: {'x' * 200}..."]


def test_notification_message_includes_escaped_summary(settings, transcript):
    message = build_notification_message({"transcript_path": str(transcript)}, settings)

    assert message.startswith("🏁 <b>Work finished.</b>")
    assert "🔧 Tools used: Read, Edit, Bash" in message
    assert "📁 Files touched: app.py" in message
    assert "All &lt;3 tests pass &amp; the fix is in." in message
    assert message.endswith("💬 Reply with the next instruction to continue:")


def test_notification_message_without_payload(settings):
    message = build_notification_message(None, settings)

    assert "Summary" not in message
    assert "Last rejection" not in message


@pytest.mark.asyncio
async def test_notification_message_mentions_recent_rejection(settings):
    log = RejectionLog(settings.reject_reason_log_path, rotate_bytes=1024 * 1024, max_files=2)
    await log.append(
        RejectLogEntry(
            provider="telegram",
            request_id="toolu_01",
            tool_name="Bash",
            cwd="/work",
            reason="publish from CI",
            reason_source=RejectReasonSource.USER_INPUT,
        )
    )

    here = build_notification_message({"cwd": "/work"}, settings)
    elsewhere = build_notification_message({"cwd": "/other"}, settings)

    assert "❌ Last rejection: Bash (publish from CI)" in here
    assert "Last rejection" not in elsewhere


@pytest.mark.asyncio
async def test_old_rejection_is_not_mentioned(settings):
    log = RejectionLog(settings.reject_reason_log_path, rotate_bytes=1024 * 1024, max_files=2)
    await log.append(
        RejectLogEntry(
            provider="telegram",
            request_id="toolu_01",
            tool_name="Bash",
            cwd="/work",
            reason="",
            reason_source=RejectReasonSource.TIMEOUT,
            timestamp="2020-01-01T00:00:00+00:00",
        )
    )

    assert "Last rejection" not in build_notification_message({"cwd": "/work"}, settings)


# ============================================================================
# NOTIFY AND CONTINUE
# ============================================================================


def test_parse_stop_payload():
    assert parse_stop_payload("") is None
    assert parse_stop_payload("not json") is None
    assert parse_stop_payload("[1]") is None
    assert parse_stop_payload('{"session_id": "s1"}') == {"session_id": "s1"}


def test_build_continue_output():
    assert build_continue_output("now update the docs") == {
        "decision": "block",
        "reason": "now update the docs",
    }


@pytest.mark.asyncio
async def test_notify_and_wait_returns_reply(settings):
    provider = FakeChatProvider()
    provider.replies.append("  now update the docs  ")

    reply = await notify_and_wait({"cwd": "/work"}, settings, provider=provider)

    assert reply == "now update the docs"
    assert provider.messages[0].startswith("🏁 <b>Work finished.</b>")
    assert provider.closed


@pytest.mark.asyncio
async def test_notify_and_wait_timeout_lets_agent_stop(settings):
    provider = FakeChatProvider()

    reply = await notify_and_wait(None, replace(settings, question_timeout_ms=100), provider=provider)

    assert reply is None
    assert len(provider.messages) == 1
    assert provider.closed


@pytest.mark.asyncio
async def test_missing_config_lets_agent_stop():
    assert await run_hook(json.dumps({"cwd": "/work"}), environ={}) is None


def test_main_prints_continuation(monkeypatch):
    async def fake_run_hook(raw_input, environ=None):
        return build_continue_output("keep going")

    monkeypatch.setattr(stop, "run_hook", fake_run_hook)
    stdout = io.StringIO()

    stop.main(stdin=io.StringIO("{}"), stdout=stdout)

    assert json.loads(stdout.getvalue()) == {"decision": "block", "reason": "keep going"}


def test_main_prints_nothing_when_stopping(monkeypatch):
    async def fake_run_hook(raw_input, environ=None):
        return None

    monkeypatch.setattr(stop, "run_hook", fake_run_hook)
    stdout = io.StringIO()

    stop.main(stdin=io.StringIO("{}"), stdout=stdout)

    assert stdout.getvalue() == ""

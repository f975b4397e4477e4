"""AskUserQuestion hook.

Relays the agent's multiple-choice questions to the operator over chat and
prints the collected answers as hook JSON on stdout.
"""

import asyncio
import html
import json
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TextIO

from loguru import logger

from ..config import Config, Settings
from ..logging_config import configure_logging
from ..providers import ChatProvider, create_provider


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class Question:
    """One AskUserQuestion entry."""

    question: str
    options: List[QuestionOption] = field(default_factory=list)
    header: str = ""

    @property
    def labels(self) -> List[str]:
        return [option.label for option in self.options]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Question":
        """
        Raises:
            ValueError: If the entry has no question text
        """
        text = data.get("question")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Question entry is missing its text")
        options = [
            QuestionOption(label=str(option["label"]), description=str(option.get("description") or ""))
            for option in data.get("options") or []
            if isinstance(option, dict) and option.get("label")
        ]
        return cls(question=text, options=options, header=str(data.get("header") or ""))


def parse_questions(raw_input: str) -> List[Question]:
    """
    Raises:
        ValueError: If the input is not a JSON object or an entry is malformed
    """
    payload = json.loads(raw_input)
    if not isinstance(payload, dict):
        raise ValueError("Hook input must be a JSON object")
    questions = (payload.get("tool_input") or {}).get("questions") or []
    return [Question.from_dict(entry) for entry in questions]


def format_question(question: Question) -> str:
    """Question text as HTML, options numbered from 1."""
    lines = ["❓ <b>Claude Code Question</b>", ""]
    if question.header:
        lines.append(f"<b>[{html.escape(question.header)}]</b>")
    lines.append(html.escape(question.question))
    lines.append("")
    for number, option in enumerate(question.options, start=1):
        line = f"{number}. <b>{html.escape(option.label)}</b>"
        if option.description:
            line += f" - {html.escape(option.description)}"
        lines.append(line)
    return "\n".join(lines)


def build_answers_output(answers: Dict[str, str]) -> Dict[str, Any]:
    return {"continue": True, "result": {"answers": answers}}


def build_error_output(reason: str) -> Dict[str, Any]:
    return {"continue": False, "reason": reason}


async def ask_questions(
    questions: List[Question],
    settings: Settings,
    provider: Optional[ChatProvider] = None,
) -> Dict[str, str]:
    """
    Ask each question in turn, each with its own question timeout.

    Returns:
        Answers keyed "question-<index>"

    Raises:
        TimeoutError: If a question went unanswered
        ProviderError: On API failure
    """
    provider = provider or create_provider(settings)
    answers: Dict[str, str] = {}
    try:
        await provider.get_info()
        for index, question in enumerate(questions):
            answers[f"question-{index}"] = await provider.ask_options(
                format_question(question), question.labels, settings.question_timeout
            )
            logger.info(f"Question {index} answered")
    finally:
        await provider.aclose()
    return answers


async def run_hook(raw_input: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Full hook run: parse, configure, ask. Never raises."""
    try:
        questions = parse_questions(raw_input)
        if not questions:
            return build_error_output("No questions provided")

        settings = Config.load(environ)
        Config.validate(settings)
        configure_logging(settings.log_level, settings.log_file)

        return build_answers_output(await ask_questions(questions, settings))
    except Exception as e:
        logger.error(f"Question hook error: {e}")
        return build_error_output(f"Error while handling question: {e}")


def main(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> None:
    """Console entry point for `dmplz-question-hook`."""
    configure_logging()
    raw_input = (stdin or sys.stdin).read()
    output = asyncio.run(run_hook(raw_input))
    out = stdout or sys.stdout
    out.write(json.dumps(output) + "\n")
    out.flush()


if __name__ == "__main__":
    main()

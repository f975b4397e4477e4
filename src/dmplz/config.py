"""Centralized configuration for DM-Plz."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigError

PROVIDERS = ("telegram", "discord")
NO_DECISION_BEHAVIORS = ("allow", "deny")


@dataclass(frozen=True)
class Settings:
    """
    Resolved configuration for one hook or server run.

    Attributes:
        provider: Messaging platform ("telegram" or "discord")
        bot_token: Bot token for the selected platform
        chat_id: Default chat (Telegram) or channel (Discord) id
        permission_chat_id: Chat/channel dedicated to permission requests
        discord_dm_user_id: Discord user to receive permission requests by DM
        question_timeout_ms: Overall deadline for one request
        reject_reason_timeout_ms: Upper bound for the rejection reason dialog
        reject_reason_max_chars: Maximum stored reason length
        reject_reason_log_path: JSON-lines rejection log
        reject_reason_log_rotate_bytes: Rotation threshold
        reject_reason_log_max_files: Rotated generations to keep
        no_reason_keywords: Replies meaning "no reason" (case-insensitive)
        cascade_window_ms: How long a rejection auto-rejects follow-up requests
        state_dir: Directory for lock, cascade and session cache files
        no_decision_behavior: Hook output when no decision was reached
        log_level: Loguru level for the stderr sink
        log_file: Optional loguru file sink
    """

    provider: str
    bot_token: str
    chat_id: str
    permission_chat_id: Optional[str] = None
    discord_dm_user_id: Optional[str] = None
    question_timeout_ms: int = 180000
    reject_reason_timeout_ms: int = 600000
    reject_reason_max_chars: int = 300
    reject_reason_log_path: Path = field(
        default_factory=lambda: Path.home() / ".claude" / "dm-plz" / "rejections.jsonl"
    )
    reject_reason_log_rotate_bytes: int = 10 * 1024 * 1024
    reject_reason_log_max_files: int = 10
    no_reason_keywords: Tuple[str, ...] = ("no_reason",)
    cascade_window_ms: int = 5000
    state_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    no_decision_behavior: str = "allow"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def effective_permission_chat_id(self) -> str:
        """Chat/channel that receives permission prompts."""
        return self.permission_chat_id or self.chat_id

    @property
    def question_timeout(self) -> float:
        return self.question_timeout_ms / 1000.0

    @property
    def reject_reason_timeout(self) -> float:
        return self.reject_reason_timeout_ms / 1000.0

    @property
    def cascade_window(self) -> float:
        return self.cascade_window_ms / 1000.0


class Config:
    """
    DM-Plz configuration with environment variable overrides.

    All defaults are centralized here. `load()` reads the DMPLZ_* environment
    variables each time it is called so hooks and tests see the current env.
    """

    # ========================================================================
    # Timeouts
    # ========================================================================
    DEFAULT_QUESTION_TIMEOUT_MS: int = 180000  # 3 minutes
    DEFAULT_REJECT_REASON_TIMEOUT_MS: int = 600000  # 10 minutes
    DEFAULT_REJECT_CASCADE_WINDOW_MS: int = 5000

    # ========================================================================
    # Rejection log
    # ========================================================================
    DEFAULT_REJECT_REASON_MAX_CHARS: int = 300
    DEFAULT_REJECT_REASON_LOG_PATH: str = "~/.claude/dm-plz/rejections.jsonl"
    DEFAULT_REJECT_REASON_LOG_ROTATE_BYTES: int = 10 * 1024 * 1024
    DEFAULT_REJECT_REASON_LOG_MAX_FILES: int = 10
    DEFAULT_NO_REASON_KEYWORDS: Tuple[str, ...] = ("no_reason",)

    # ========================================================================
    # Hook behavior
    # ========================================================================
    DEFAULT_NO_DECISION_BEHAVIOR: str = "allow"  # fail-open, never block the agent
    DEFAULT_LOG_LEVEL: str = "INFO"

    @staticmethod
    def _parse_number(raw_value: Optional[str], fallback: int) -> int:
        """Parse an integer env value, falling back on anything unparseable."""
        try:
            return int(str(raw_value).strip())
        except (TypeError, ValueError):
            return fallback

    @staticmethod
    def _parse_keywords(raw_value: Optional[str], fallback: Tuple[str, ...]) -> Tuple[str, ...]:
        """Parse a comma separated keyword list."""
        if not raw_value:
            return fallback
        keywords = tuple(
            keyword.strip() for keyword in raw_value.split(",") if keyword.strip()
        )
        return keywords or fallback

    @staticmethod
    def resolve_log_path(raw_path: Optional[str]) -> Path:
        """Resolve the rejection log path, expanding a leading '~'."""
        resolved = raw_path if raw_path else Config.DEFAULT_REJECT_REASON_LOG_PATH
        if resolved.startswith("~"):
            trimmed = resolved[1:].lstrip("/\\")
            return Path.home() / trimmed
        return Path(resolved)

    @classmethod
    def load(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        """
        Build Settings from the environment.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Resolved settings

        Raises:
            ConfigError: If the selected provider is missing its token or chat id
        """
        env = os.environ if environ is None else environ

        # Anything other than "discord" falls back to telegram
        provider = "discord" if env.get("DMPLZ_PROVIDER") == "discord" else "telegram"

        if provider == "telegram":
            bot_token = env.get("DMPLZ_TELEGRAM_BOT_TOKEN")
            chat_id = env.get("DMPLZ_TELEGRAM_CHAT_ID")
            if not bot_token or not chat_id:
                raise ConfigError(
                    "Telegram configuration is required: "
                    "DMPLZ_TELEGRAM_BOT_TOKEN, DMPLZ_TELEGRAM_CHAT_ID"
                )
            discord_dm_user_id = None
        else:
            bot_token = env.get("DMPLZ_DISCORD_BOT_TOKEN")
            chat_id = env.get("DMPLZ_DISCORD_CHANNEL_ID")
            if not bot_token or not chat_id:
                raise ConfigError(
                    "Discord configuration is required: "
                    "DMPLZ_DISCORD_BOT_TOKEN, DMPLZ_DISCORD_CHANNEL_ID"
                )
            discord_dm_user_id = env.get("DMPLZ_DISCORD_DM_USER_ID") or None

        state_dir = env.get("DMPLZ_STATE_DIR")

        return Settings(
            provider=provider,
            bot_token=bot_token,
            chat_id=chat_id,
            permission_chat_id=env.get("DMPLZ_PERMISSION_CHAT_ID") or None,
            discord_dm_user_id=discord_dm_user_id,
            question_timeout_ms=cls._parse_number(
                env.get("DMPLZ_QUESTION_TIMEOUT_MS"), cls.DEFAULT_QUESTION_TIMEOUT_MS
            ),
            reject_reason_timeout_ms=cls._parse_number(
                env.get("DMPLZ_REJECT_REASON_TIMEOUT_MS"),
                cls.DEFAULT_REJECT_REASON_TIMEOUT_MS,
            ),
            reject_reason_max_chars=cls._parse_number(
                env.get("DMPLZ_REJECT_REASON_MAX_CHARS"),
                cls.DEFAULT_REJECT_REASON_MAX_CHARS,
            ),
            reject_reason_log_path=cls.resolve_log_path(
                env.get("DMPLZ_REJECT_REASON_LOG_PATH")
            ),
            reject_reason_log_rotate_bytes=cls._parse_number(
                env.get("DMPLZ_REJECT_REASON_LOG_ROTATE_BYTES"),
                cls.DEFAULT_REJECT_REASON_LOG_ROTATE_BYTES,
            ),
            reject_reason_log_max_files=cls._parse_number(
                env.get("DMPLZ_REJECT_REASON_LOG_MAX_FILES"),
                cls.DEFAULT_REJECT_REASON_LOG_MAX_FILES,
            ),
            no_reason_keywords=cls._parse_keywords(
                env.get("DMPLZ_REJECT_REASON_NO_REASON_KEYWORDS"),
                cls.DEFAULT_NO_REASON_KEYWORDS,
            ),
            cascade_window_ms=cls._parse_number(
                env.get("DMPLZ_REJECT_CASCADE_WINDOW_MS"),
                cls.DEFAULT_REJECT_CASCADE_WINDOW_MS,
            ),
            state_dir=Path(state_dir) if state_dir else Path(tempfile.gettempdir()),
            no_decision_behavior=(
                env.get("DMPLZ_NO_DECISION_BEHAVIOR", cls.DEFAULT_NO_DECISION_BEHAVIOR)
                .strip()
                .lower()
            ),
            log_level=env.get("DMPLZ_LOG_LEVEL", cls.DEFAULT_LOG_LEVEL).upper(),
            log_file=env.get("DMPLZ_LOG_FILE") or None,
        )

    @classmethod
    def validate(cls, settings: Settings) -> bool:
        """
        Validate configuration consistency.

        Checks:
        - All timeouts are > 0
        - Reason length and rotation threshold are > 0
        - No-decision behavior is a known value

        Returns:
            True if validation passes

        Raises:
            ConfigError: If validation fails
        """
        errors = []

        if settings.provider not in PROVIDERS:
            errors.append(f"provider must be one of {PROVIDERS}, got {settings.provider}")

        if settings.question_timeout_ms <= 0:
            errors.append(
                f"DMPLZ_QUESTION_TIMEOUT_MS must be > 0, got {settings.question_timeout_ms}"
            )
        if settings.reject_reason_timeout_ms <= 0:
            errors.append(
                "DMPLZ_REJECT_REASON_TIMEOUT_MS must be > 0, "
                f"got {settings.reject_reason_timeout_ms}"
            )
        if settings.cascade_window_ms < 0:
            errors.append(
                f"DMPLZ_REJECT_CASCADE_WINDOW_MS must be >= 0, got {settings.cascade_window_ms}"
            )

        if settings.reject_reason_max_chars <= 0:
            errors.append(
                "DMPLZ_REJECT_REASON_MAX_CHARS must be > 0, "
                f"got {settings.reject_reason_max_chars}"
            )
        if settings.reject_reason_log_rotate_bytes <= 0:
            errors.append(
                "DMPLZ_REJECT_REASON_LOG_ROTATE_BYTES must be > 0, "
                f"got {settings.reject_reason_log_rotate_bytes}"
            )

        if settings.no_decision_behavior not in NO_DECISION_BEHAVIORS:
            errors.append(
                f"DMPLZ_NO_DECISION_BEHAVIOR must be one of {NO_DECISION_BEHAVIORS}, "
                f"got {settings.no_decision_behavior!r}"
            )

        if errors:
            raise ConfigError(f"Config validation failed: {'; '.join(errors)}")

        return True

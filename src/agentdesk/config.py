"""Runtime configuration for the job orchestrator and worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BLOCKED_PHRASES = (
    "password:",
    "api_key=",
    "secret_key",
    "private key",
    "drop table",
)


@dataclass(slots=True)
class OrchestratorSettings:
    """Per-job pipeline settings."""

    max_retries: int = 3
    clarification_threshold: float = 0.5
    classify_timeout_seconds: float = 30.0
    knowledge_timeout_seconds: float = 30.0
    capability_timeout_seconds: float = 120.0
    step_timeout_seconds: float = 60.0
    fallback_capability: str = "general/assistant"
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class QualitySettings:
    """Quality gate acceptance policy."""

    pass_threshold: float = 0.6
    min_passed_checks: int = 3
    lenient_on_capability_success: bool = False
    min_output_chars: int = 20
    blocked_phrases: tuple[str, ...] = DEFAULT_BLOCKED_PHRASES


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker loop settings."""

    poll_interval_seconds: float = 1.0
    error_backoff_seconds: float = 5.0


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agentdesk.db")
    log_level: str = "INFO"
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENTDESK_DB_PATH", ".agentdesk.db")),
            log_level=os.getenv("AGENTDESK_LOG_LEVEL", "INFO").strip().upper(),
            orchestrator=OrchestratorSettings(
                max_retries=int(os.getenv("AGENTDESK_MAX_RETRIES", "3")),
                clarification_threshold=_env_float("AGENTDESK_CLARIFICATION_THRESHOLD", 0.5),
                classify_timeout_seconds=_env_float("AGENTDESK_CLASSIFY_TIMEOUT_SECONDS", 30.0),
                knowledge_timeout_seconds=_env_float(
                    "AGENTDESK_KNOWLEDGE_TIMEOUT_SECONDS",
                    30.0,
                ),
                capability_timeout_seconds=_env_float(
                    "AGENTDESK_CAPABILITY_TIMEOUT_SECONDS",
                    120.0,
                ),
                step_timeout_seconds=_env_float("AGENTDESK_STEP_TIMEOUT_SECONDS", 60.0),
                fallback_capability=os.getenv(
                    "AGENTDESK_FALLBACK_CAPABILITY",
                    "general/assistant",
                ).strip(),
                busy_timeout_ms=int(os.getenv("AGENTDESK_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            quality=QualitySettings(
                pass_threshold=_env_float("AGENTDESK_QUALITY_PASS_THRESHOLD", 0.6),
                min_passed_checks=int(os.getenv("AGENTDESK_QUALITY_MIN_PASSED_CHECKS", "3")),
                lenient_on_capability_success=_env_bool(
                    "AGENTDESK_QUALITY_LENIENT_ON_SUCCESS",
                    default=False,
                ),
                min_output_chars=int(os.getenv("AGENTDESK_QUALITY_MIN_OUTPUT_CHARS", "20")),
                blocked_phrases=_env_csv(
                    "AGENTDESK_QUALITY_BLOCKED_PHRASES",
                    DEFAULT_BLOCKED_PHRASES,
                ),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=_env_float("AGENTDESK_WORKER_POLL_SECONDS", 1.0),
                error_backoff_seconds=_env_float("AGENTDESK_WORKER_ERROR_BACKOFF_SECONDS", 5.0),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("AGENTDESK_USER_ID", "default_user"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the pipeline cannot work with."""

        orchestrator = self.orchestrator
        if orchestrator.max_retries <= 0:
            raise ValueError("AGENTDESK_MAX_RETRIES must be > 0.")
        if not 0.0 <= orchestrator.clarification_threshold <= 1.0:
            raise ValueError("AGENTDESK_CLARIFICATION_THRESHOLD must be within [0, 1].")
        for name, value in (
            ("AGENTDESK_CLASSIFY_TIMEOUT_SECONDS", orchestrator.classify_timeout_seconds),
            ("AGENTDESK_KNOWLEDGE_TIMEOUT_SECONDS", orchestrator.knowledge_timeout_seconds),
            ("AGENTDESK_CAPABILITY_TIMEOUT_SECONDS", orchestrator.capability_timeout_seconds),
            ("AGENTDESK_STEP_TIMEOUT_SECONDS", orchestrator.step_timeout_seconds),
            ("AGENTDESK_WORKER_POLL_SECONDS", self.worker.poll_interval_seconds),
            ("AGENTDESK_WORKER_ERROR_BACKOFF_SECONDS", self.worker.error_backoff_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if not orchestrator.fallback_capability:
            raise ValueError("AGENTDESK_FALLBACK_CAPABILITY must not be empty.")
        if orchestrator.busy_timeout_ms <= 0:
            raise ValueError("AGENTDESK_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not 0.0 <= self.quality.pass_threshold <= 1.0:
            raise ValueError("AGENTDESK_QUALITY_PASS_THRESHOLD must be within [0, 1].")
        if self.quality.min_passed_checks <= 0:
            raise ValueError("AGENTDESK_QUALITY_MIN_PASSED_CHECKS must be > 0.")
        if self.quality.min_output_chars < 0:
            raise ValueError("AGENTDESK_QUALITY_MIN_OUTPUT_CHARS must be >= 0.")
        if not self.user_context.user_id.strip():
            raise ValueError("AGENTDESK_USER_ID must not be empty.")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

"""Run record model for one-off scripts."""

import enum
import math
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import CheckConstraint, Enum, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from script_tracker.core.datetime_utils import utc_now
from script_tracker.models.base import Base, TimestampMixin

DEFAULT_TIMEOUT = 300  # seconds
OUTPUT_DISPLAY_LIMIT = 500


class ScriptStatus(str, enum.Enum):
    """Script run status. Only running -> terminal transitions are valid."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @classmethod
    def terminal(cls) -> tuple["ScriptStatus", ...]:
        return (cls.SUCCESS, cls.FAILED, cls.SKIPPED)


class ExecutedScript(Base, TimestampMixin):
    """Records the execution attempt and outcome of one script, keyed by its file name."""

    __tablename__ = "executed_scripts"
    __table_args__ = (
        CheckConstraint(
            "timeout_seconds IS NULL OR timeout_seconds > 0",
            name="ck_executed_scripts_timeout_positive",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    identifier: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    started_at: Mapped[datetime] = mapped_column(default=utc_now, index=True)
    status: Mapped[ScriptStatus] = mapped_column(
        Enum(
            ScriptStatus,
            values_callable=lambda e: [x.value for x in e],
            name="executed_script_status",
            native_enum=False,
            create_constraint=True,
            length=20,
        ),
        default=ScriptStatus.RUNNING,
        index=True,
    )
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<ExecutedScript {self.identifier} {self.status.value if self.status else None}>"

    @validates("timeout_seconds")
    def _validate_timeout(self, _key: str, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeout_seconds must be greater than 0")
        return value

    # Status predicates

    @property
    def is_running(self) -> bool:
        return self.status == ScriptStatus.RUNNING

    @property
    def is_success(self) -> bool:
        return self.status == ScriptStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status == ScriptStatus.FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status == ScriptStatus.SKIPPED

    # Timeouts

    @property
    def effective_timeout(self) -> float:
        """Per-record timeout override, or the default of 300 seconds."""
        return self.timeout_seconds or DEFAULT_TIMEOUT

    def is_timed_out(self, now: datetime | None = None) -> bool:
        """Check whether a running record has outlived its timeout.

        Advisory only: nothing is written. Always False once the record
        has reached a terminal status.
        """
        if not self.is_running or self.started_at is None:
            return False
        now = now or utc_now()
        return now > self.started_at + timedelta(seconds=self.effective_timeout)

    # Display helpers

    @property
    def formatted_duration(self) -> str:
        if self.duration_seconds is None:
            return "N/A"

        duration = self.duration_seconds
        if duration < 1:
            return f"{round(duration * 1000, 2)}ms"
        if duration < 60:
            return f"{round(duration, 2)}s"
        minutes = math.floor(duration / 60)
        seconds = round(duration % 60, 2)
        return f"{minutes}m {seconds}s"

    @property
    def formatted_output(self) -> str:
        if not self.output or not self.output.strip():
            return "No output"
        if len(self.output) <= OUTPUT_DISPLAY_LIMIT:
            return self.output
        return self.output[: OUTPUT_DISPLAY_LIMIT - 3] + "..."

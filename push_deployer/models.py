"""
Data models for push-deployer.

Revisions, image references and the per-run record the pipeline produces.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from push_deployer.exceptions import InputError

SHORT_REVISION_LENGTH = 7
_REVISION_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


class Revision(BaseModel):
    """A source-control commit naming exactly one build input."""

    model_config = ConfigDict(frozen=True)

    full: str = Field(..., description="Revision hash as received (7-40 hex chars)")

    @field_validator("full", mode="before")
    @classmethod
    def normalize(cls, value: object) -> str:
        if not isinstance(value, str):
            raise ValueError("revision must be a string")
        return value.strip().lower()

    @field_validator("full")
    @classmethod
    def validate_hex(cls, value: str) -> str:
        if not _REVISION_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a 7-40 character hexadecimal revision")
        return value

    @property
    def short(self) -> str:
        """Abbreviated form used as the immutable image tag."""
        return self.full[:SHORT_REVISION_LENGTH]

    @classmethod
    def parse(cls, value: Optional[str]) -> "Revision":
        """Build a revision, raising InputError for missing or malformed input."""
        if not value or not str(value).strip():
            raise InputError("No revision identifier provided")
        try:
            return cls(full=value)
        except ValueError as e:
            raise InputError(f"Invalid revision identifier: {value!r}") from e

    def __str__(self) -> str:
        return self.short


class ImageReference(BaseModel):
    """A (registry, repository, tag) triple."""

    model_config = ConfigDict(frozen=True)

    registry: str = Field("", description="Registry host[:port], empty for the default registry")
    repository: str = Field(..., description="Repository (workload) name")
    tag: str = Field(..., description="Image tag")

    @property
    def repository_path(self) -> str:
        """Registry-qualified repository, without tag."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    def with_tag(self, tag: str) -> "ImageReference":
        return ImageReference(registry=self.registry, repository=self.repository, tag=tag)

    def __str__(self) -> str:
        return f"{self.repository_path}:{self.tag}"


class PipelineOutcome(str, Enum):
    """Terminal (or in-flight) state of a pipeline run."""

    RUNNING = "running"
    DEPLOYED = "deployed"
    ROLLED_BACK = "rolled-back"
    ABORTED = "aborted"
    FATAL = "fatal"


class StepStatus(str, Enum):
    """Typed result of a single pipeline step."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    """Outcome of one pipeline step."""

    step: str = Field(..., description="Step name (sync, backup, build, ...)")
    status: StepStatus = Field(..., description="success, failure, timeout or skipped")
    started_at: str = Field(default_factory=utc_now, description="Step start timestamp")
    finished_at: Optional[str] = Field(None, description="Step end timestamp")
    duration_ms: Optional[int] = Field(None, description="Wall-clock duration")
    exit_code: Optional[int] = Field(None, description="External command exit code, if any")
    message: str = Field("", description="Human-readable detail")

    @property
    def succeeded(self) -> bool:
        return self.status in (StepStatus.SUCCESS, StepStatus.SKIPPED)


class PipelineRun(BaseModel):
    """Ephemeral execution context of one pipeline run."""

    run_id: str = Field(..., description="Unique run identifier")
    workload: str = Field(..., description="Deployment target name")
    namespace: str = Field(..., description="Deployment target namespace")
    branch: str = Field(..., description="Deployment branch")
    revision: str = Field(..., description="Full revision identifier")
    commit_image: str = Field(..., description="Immutable revision-tagged image")
    latest_image: str = Field(..., description="Floating 'latest' image")
    stable_image: str = Field(..., description="Floating 'last known good' image")
    previous_image: Optional[str] = Field(
        None, description="Image the workload ran before Apply"
    )
    outcome: PipelineOutcome = Field(PipelineOutcome.RUNNING, description="Run outcome")
    error_category: Optional[str] = Field(None, description="Error taxonomy category")
    message: str = Field("", description="Current status message")
    steps: List[StepResult] = Field(default_factory=list, description="Ordered step results")
    started_at: str = Field(default_factory=utc_now, description="Run start timestamp")
    completed_at: Optional[str] = Field(None, description="Run completion timestamp")

    @property
    def finished(self) -> bool:
        return self.outcome != PipelineOutcome.RUNNING

    def step(self, name: str) -> Optional[StepResult]:
        """Last recorded result for a step, if any."""
        for result in reversed(self.steps):
            if result.step == name:
                return result
        return None


class PushEvent(BaseModel):
    """The part of a repository push payload the gateway reads."""

    ref: str = Field("", description="Pushed ref, e.g. refs/heads/main")
    after: Optional[str] = Field(None, description="Revision the ref now points to")

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref

    @property
    def is_branch_deletion(self) -> bool:
        return bool(self.after) and set(self.after) == {"0"}

"""Pydantic models for check-run reports and GitHub webhook payloads."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class CheckConclusion(str, Enum):
    ACTION_REQUIRED = "action_required"
    CANCELLED = "cancelled"
    FAILURE = "failure"
    NEUTRAL = "neutral"
    SUCCESS = "success"
    SKIPPED = "skipped"
    STALE = "stale"
    TIMED_OUT = "timed_out"


class ReportPayload(BaseModel):
    """A validated CI status report. Built once per request, never mutated."""

    model_config = ConfigDict(frozen=True)

    sha: str
    name: str
    status: str
    conclusion: Optional[str] = None
    title: str
    summary: str
    details_url: str


class CheckRunKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_run_id: int
    status: str
    conclusion: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"check:{self.check_run_id}:{self.status}:{self.conclusion or 'none'}"


def checks_created_key(sha: str) -> str:
    return f"checks-created:{sha}"


class Account(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: Optional[str] = None


class Repository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    owner: Account = Field(default_factory=Account)


class CheckSuite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    head_sha: Optional[str] = None


class Installation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None


class CheckSuiteEvent(BaseModel):
    """The parts of a ``check_suite`` delivery the webhook handler reads."""

    model_config = ConfigDict(extra="ignore")

    action: str = ""
    check_suite: CheckSuite = Field(default_factory=CheckSuite)
    repository: Repository = Field(default_factory=Repository)
    installation: Optional[Installation] = None

    @property
    def head_sha(self) -> str | None:
        return self.check_suite.head_sha

    @property
    def owner_login(self) -> str | None:
        return self.repository.owner.login

    @property
    def installation_id(self) -> int | None:
        return self.installation.id if self.installation else None


class ReadinessResponse(BaseModel):
    message: str
    timestamp: str
    status: str = "ready"

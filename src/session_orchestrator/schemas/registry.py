"""Pydantic models for the shared session registry document."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = "1.0.0"


class ThreadType(str, Enum):
    """Role/lifecycle category of a session."""

    BASE = "base"
    PARALLEL = "parallel"
    CHAINED = "chained"
    FUSION = "fusion"
    BIG = "big"
    LONG = "long"


def utc_now() -> str:
    """Current time as an ISO-8601 timestamp."""
    return datetime.now().astimezone().isoformat()


class Session(BaseModel):
    """A single registered session (one git worktree)."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Numeric session ID as a string")
    path: str = Field(..., description="Absolute path of the session worktree")
    branch: str | None = Field(default=None)
    nickname: str | None = Field(default=None)
    is_main: bool = Field(default=False)
    thread_type: ThreadType | None = Field(
        default=None, description="Absent on sessions written by older releases"
    )
    created: str = Field(default_factory=utc_now)
    last_active: str = Field(default_factory=utc_now)
    merged_at: str | None = Field(default=None)
    story: str | None = Field(default=None, description="Story the session works on")

    @property
    def effective_thread_type(self) -> ThreadType:
        """Thread type, inferring legacy sessions from is_main."""
        if self.thread_type is not None:
            return self.thread_type
        return ThreadType.BASE if self.is_main else ThreadType.PARALLEL


class Registry(BaseModel):
    """The registry document, one per repository."""

    model_config = ConfigDict(extra="allow")

    schema_version: str = Field(default=SCHEMA_VERSION)
    next_id: int = Field(default=1, ge=1)
    project_name: str = Field(default="")
    updated: str = Field(default_factory=utc_now)
    sessions: dict[str, Session] = Field(default_factory=dict)

    def find_by_path(self, path: str) -> Session | None:
        """Return the session registered for a worktree path."""
        for session in self.sessions.values():
            if session.path == path:
                return session
        return None

    def main_session(self) -> Session | None:
        """Return the main session, if registered."""
        for session in self.sessions.values():
            if session.is_main:
                return session
        return None

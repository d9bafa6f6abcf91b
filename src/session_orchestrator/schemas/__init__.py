"""Pydantic schemas for configuration, the registry, teams and waves."""

from session_orchestrator.schemas.config import ProjectConfig
from session_orchestrator.schemas.registry import Registry, Session, ThreadType
from session_orchestrator.schemas.team import TeamMode, TeamTemplate
from session_orchestrator.schemas.wave import Analyzer, WaveStatus

__all__ = [
    "ProjectConfig",
    "Registry",
    "Session",
    "ThreadType",
    "TeamMode",
    "TeamTemplate",
    "Analyzer",
    "WaveStatus",
]

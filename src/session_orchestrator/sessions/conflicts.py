"""Automatic merge-conflict resolution by file category.

When a session branch conflicts with the target branch, each conflicted
path is categorized (docs, tests, schema, config, source) and resolved
with the strategy of its category. "Ours" is always the target branch
checked out in the main worktree and "theirs" the session branch.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from session_orchestrator.utils.git import (
    CommandResult,
    checkout_conflict_side,
    merge_file_union,
    read_index_stage,
    stage_paths,
)

logger = logging.getLogger(__name__)


class FileCategory(str, Enum):
    DOCS = "docs"
    TEST = "test"
    SCHEMA = "schema"
    CONFIG = "config"
    SOURCE = "source"


class Resolution(str, Enum):
    """How the conflicted hunks of a file are settled."""

    UNION = "union"
    THEIRS = "theirs"
    OURS = "ours"


@dataclass(frozen=True)
class ResolutionPlan:
    file: str
    category: FileCategory
    resolution: Resolution
    description: str

    def to_dict(self) -> dict[str, str]:
        return {
            "file": self.file,
            "category": self.category.value,
            "resolution": self.resolution.value,
            "description": self.description,
        }


CATEGORY_RESOLUTIONS: dict[FileCategory, tuple[Resolution, str]] = {
    FileCategory.DOCS: (Resolution.UNION, "Documentation is additive, both versions kept"),
    FileCategory.TEST: (Resolution.UNION, "Tests are additive, both versions kept"),
    FileCategory.SCHEMA: (Resolution.THEIRS, "Schemas evolve forward, session version used"),
    FileCategory.CONFIG: (Resolution.OURS, "Config changes need review, target version kept"),
    FileCategory.SOURCE: (Resolution.THEIRS, "Conflicting source hunks take the session version"),
}

CONFIG_SUFFIXES = {".json", ".yaml", ".yml", ".toml"}


def categorize_file(file_path: str) -> FileCategory:
    """Categorize a repository-relative path.

    Checks run in order: docs, tests, schema/migrations, config, and
    everything else is source.
    """
    path = PurePosixPath(file_path)
    suffix = path.suffix.lower()
    name = path.name.lower()
    parent = str(path.parent).lower()

    if suffix == ".md" or name == "readme" or name.startswith("readme."):
        return FileCategory.DOCS

    if (
        ".test." in file_path
        or ".spec." in file_path
        or "__tests__" in file_path
        or name.startswith("test_")
        or "test" in parent
    ):
        return FileCategory.TEST

    if suffix == ".sql" or any(k in file_path for k in ("schema", "migration", "prisma")):
        return FileCategory.SCHEMA

    if suffix in CONFIG_SUFFIXES or "config" in name or name.startswith("."):
        return FileCategory.CONFIG

    return FileCategory.SOURCE


def plan_resolution(file_path: str) -> ResolutionPlan:
    category = categorize_file(file_path)
    resolution, description = CATEGORY_RESOLUTIONS[category]
    return ResolutionPlan(file_path, category, resolution, description)


def resolve_conflict(plan: ResolutionPlan, cwd: str | Path) -> CommandResult:
    """Settle one conflicted path in the index and working tree.

    A union merge needs both sides; a path deleted on one side cannot be
    unioned and falls back to the session version. The resolved file is
    staged on success.

    Args:
        plan: What to do with the file
        cwd: Main worktree holding the in-progress merge

    Returns:
        CommandResult of the last git step (non-zero if unresolved)
    """
    if plan.resolution == Resolution.UNION:
        result = _union(plan.file, cwd)
        if result is None:
            logger.info("Cannot union %s, taking the session version", plan.file)
            result = checkout_conflict_side(plan.file, "theirs", cwd=cwd)
    else:
        result = checkout_conflict_side(plan.file, plan.resolution.value, cwd=cwd)

    if result.returncode != 0:
        return result
    return stage_paths([plan.file], cwd=cwd)


def _union(file_path: str, cwd: str | Path) -> CommandResult | None:
    ours = read_index_stage(file_path, 2, cwd=cwd)
    theirs = read_index_stage(file_path, 3, cwd=cwd)
    if ours is None or theirs is None:
        return None
    # Both sides added the file: union against an empty base.
    base = read_index_stage(file_path, 1, cwd=cwd) or b""

    with tempfile.TemporaryDirectory(prefix="merge-union-") as tmp:
        versions = {}
        for label, content in (("ours", ours), ("base", base), ("theirs", theirs)):
            versions[label] = Path(tmp) / label
            versions[label].write_bytes(content)

        result = merge_file_union(versions["ours"], versions["base"], versions["theirs"])
        if result.returncode != 0:
            return result
        (Path(cwd) / file_path).write_bytes(versions["ours"].read_bytes())
    return result

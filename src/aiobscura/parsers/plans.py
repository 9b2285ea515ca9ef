"""
Plan document parsing.

Claude Code stores plan-mode documents as markdown under
``~/.claude/plans/<slug>.md``; session records reference them by ``slug``.
Each distinct content hash of a plan becomes one plan version.
"""

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

from aiobscura.models.db import PlanStatus
from aiobscura.models.parsed import ParsedPlan
from aiobscura.utils.hashing import calculate_content_hash

logger = logging.getLogger(__name__)

PLAN_FILE_PATTERN = re.compile(r"\.claude/plans/[^/]+\.md$")


def is_plan_file_path(file_path: str) -> bool:
    """True if the path looks like a Claude Code plan file (``.claude/plans/*.md``)."""
    if not file_path:
        return False
    return bool(PLAN_FILE_PATTERN.search(file_path.replace("\\", "/")))


def extract_title(content: str) -> Optional[str]:
    """Return the text of the first ``# `` heading, if any."""
    for line in content.splitlines():
        if line.startswith("# "):
            return line[2:].strip()
    return None


def parse_plan_file(plan_path: Path, slug: Optional[str] = None) -> Optional[ParsedPlan]:
    """
    Read a plan markdown file.

    Args:
        plan_path: Path to the ``.md`` file
        slug: Plan slug; defaults to the file stem

    Returns:
        ParsedPlan, or None if the file is missing or unreadable
    """
    if not plan_path.is_file():
        return None

    try:
        content = plan_path.read_text(encoding="utf-8")
        stat = plan_path.stat()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Cannot read plan file {plan_path}: {e}")
        return None

    modified_at = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
    # st_ctime is metadata-change time on Linux; good enough as a creation hint
    created_at = min(datetime.fromtimestamp(stat.st_ctime, tz=UTC), modified_at)

    return ParsedPlan(
        slug=slug or plan_path.stem,
        path=str(plan_path),
        content_hash=calculate_content_hash(content),
        created_at=created_at,
        modified_at=modified_at,
        title=extract_title(content),
        content=content,
        status=PlanStatus.UNKNOWN,
    )

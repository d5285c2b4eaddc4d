"""Workspace skills: ``skills/<name>/SKILL.md`` files with a small frontmatter."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SKILLS_DIRNAME = "skills"
SKILL_FILENAME = "SKILL.md"
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True, slots=True)
class SkillEntry:
    name: str
    description: str
    path: Path


def parse_frontmatter(markdown: str) -> tuple[dict[str, str], str]:
    """Split ``key: value`` frontmatter from the body. Unknown shapes yield ``{}``."""
    if not markdown.startswith("---"):
        return {}, markdown
    end = markdown.find("\n---", 3)
    if end == -1:
        return {}, markdown
    block = markdown[3:end].strip()
    body = markdown[end + 4 :].lstrip("\n")
    parsed: dict[str, str] = {}
    for line in block.splitlines():
        stripped = line.strip()
        if not stripped or ":" not in stripped:
            continue
        key, raw = stripped.split(":", 1)
        parsed[key.strip()] = raw.strip().strip('"').strip("'")
    return parsed, body


def _first_paragraph(body: str) -> str:
    for chunk in body.split("\n\n"):
        text = " ".join(
            line.strip() for line in chunk.splitlines() if not line.strip().startswith("#")
        )
        if text:
            return text
    return ""


def load_skill_catalog(workspace: Path) -> list[SkillEntry]:
    root = workspace / SKILLS_DIRNAME
    if not root.is_dir():
        return []
    entries: list[SkillEntry] = []
    for skill_file in sorted(root.glob(f"*/{SKILL_FILENAME}")):
        try:
            text = skill_file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Skipping unreadable skill %s: %s", skill_file, exc)
            continue
        meta, body = parse_frontmatter(text)
        name = meta.get("name") or skill_file.parent.name
        description = meta.get("description") or _first_paragraph(body)
        entries.append(SkillEntry(name=name, description=description, path=skill_file))
    return entries


def read_skill(workspace: Path, name: str) -> str | None:
    if not _NAME_PATTERN.match(name):
        return None
    for entry in load_skill_catalog(workspace):
        if entry.name == name:
            return entry.path.read_text(encoding="utf-8")
    return None

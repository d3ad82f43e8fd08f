"""
Read-only listing of the assistant's projects folder.

The assistant stores one directory per project under its projects root; the
directory name is the project path with ``/`` replaced by ``-``. Each
conversation is a ``*.jsonl`` file inside it.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _decode_project_name(name: str) -> str:
    """Best-effort reverse of the assistant's path encoding."""
    return name.replace("-", "/")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _scan_project(full_path: str) -> Dict[str, Any]:
    session_count = 0
    newest: Optional[float] = None
    try:
        with os.scandir(full_path) as it:
            for entry in it:
                if not entry.is_file() or not entry.name.endswith(".jsonl"):
                    continue
                session_count += 1
                try:
                    mtime = entry.stat().st_mtime
                except OSError:
                    continue
                if newest is None or mtime > newest:
                    newest = mtime
    except OSError as e:
        logger.debug("projects: cannot scan %s: %s", full_path, e)
    return {
        "sessionCount": session_count,
        "lastActivity": _iso(newest) if newest is not None else None,
    }


def list_projects(projects_dir: str) -> List[Dict[str, Any]]:
    """Return one entry per project directory, sorted by name. Missing root gives []."""
    if not os.path.isdir(projects_dir):
        return []
    projects: List[Dict[str, Any]] = []
    try:
        with os.scandir(projects_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("projects: cannot list %s: %s", projects_dir, e)
        return []
    for entry in entries:
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        project = {
            "name": entry.name,
            "path": _decode_project_name(entry.name),
            "fullPath": entry.path,
        }
        project.update(_scan_project(entry.path))
        projects.append(project)
    return projects

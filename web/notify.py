"""
Projects-folder watcher and the notification it broadcasts.

A watchdog Observer watches the assistant's projects root. Events are
filtered through gitignore-style patterns, debounced (last event wins) and
turned into a NotificationEvent carrying the recomputed project list, which
is handed to ``on_event`` from the timer thread.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pathspec
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from projects import list_projects

logger = logging.getLogger(__name__)

IGNORE_PATTERNS: Tuple[str, ...] = (
    "node_modules/",
    ".git/",
    "dist/",
    "build/",
    "*.tmp",
    "*.swp",
    ".DS_Store",
)

# watchdog event type -> (file change, directory change)
_CHANGE_TYPES: Dict[str, Tuple[str, str]] = {
    "created": ("add", "addDir"),
    "modified": ("change", "change"),
    "deleted": ("unlink", "unlinkDir"),
    "moved": ("change", "change"),
}


@dataclass(frozen=True)
class NotificationEvent:
    change_type: str
    changed_file: str
    projects: List[Dict[str, Any]] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "projects_updated",
            "projects": self.projects,
            "timestamp": self.timestamp,
            "changeType": self.change_type,
            "changedFile": self.changed_file,
        }


class _EventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ProjectsWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        kinds = _CHANGE_TYPES.get(event.event_type)
        if kinds is None:
            # opened, closed, closed_no_write
            return
        if event.is_directory and event.event_type == "modified":
            # Directory mtime bumps duplicate the child events
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        self._watcher.record(kinds[1] if event.is_directory else kinds[0], path, event.is_directory)


class ProjectsWatcher:
    """Watches the projects root and emits debounced NotificationEvents."""

    def __init__(
        self,
        projects_dir: str,
        on_event: Callable[[NotificationEvent], None],
        debounce: float = 0.3,
        ignore_patterns: Tuple[str, ...] = IGNORE_PATTERNS,
    ):
        self.projects_dir = os.path.abspath(projects_dir)
        self._on_event = on_event
        self._debounce = debounce
        self._ignore = pathspec.PathSpec.from_lines("gitwildmatch", ignore_patterns)
        self._lock = threading.Lock()
        self._pending: Optional[Tuple[str, str]] = None
        self._timer: Optional[threading.Timer] = None
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def is_ignored(self, rel_path: str, is_dir: bool = False) -> bool:
        check = rel_path.replace(os.sep, "/")
        if is_dir:
            check += "/"
        return self._ignore.match_file(check)

    def record(self, change_type: str, path: str, is_dir: bool = False) -> None:
        """Record one filesystem change; resets the debounce timer."""
        rel = os.path.relpath(path, self.projects_dir)
        if rel.startswith(".."):
            return
        if self.is_ignored(rel, is_dir):
            return
        with self._lock:
            self._pending = (change_type, rel)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> Optional[NotificationEvent]:
        """Build and emit the event for the latest pending change."""
        with self._lock:
            pending, self._pending = self._pending, None
            self._timer = None
        if pending is None:
            return None
        change_type, rel = pending
        try:
            event = NotificationEvent(
                change_type=change_type,
                changed_file=rel,
                projects=list_projects(self.projects_dir),
            )
            self._on_event(event)
        except Exception:
            logger.exception("projects watcher: error handling %s %s", change_type, rel)
            return None
        return event

    def start(self) -> bool:
        """Start watching. Returns False if the projects root does not exist."""
        if self._observer is not None:
            return True
        if not os.path.isdir(self.projects_dir):
            logger.warning("projects watcher: %s does not exist, not watching", self.projects_dir)
            return False
        observer = Observer()
        observer.schedule(_EventHandler(self), self.projects_dir, recursive=True)
        observer.daemon = True
        try:
            observer.start()
        except OSError as e:
            logger.error("projects watcher: failed to start: %s", e)
            return False
        self._observer = observer
        logger.info("projects watcher: watching %s", self.projects_dir)
        return True

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
            logger.info("projects watcher: stopped")

"""File snapshots for undo/redo of a turn's file-system effects.

Snapshots hold the content a file had *before* a turn touched it. They
are tied to the message index at which the turn started, so undoing to
index N restores every file changed by turns after N. State is kept in
memory only.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .logger import get_logger

MAX_SNAPSHOTS = 50
MAX_FILE_SIZE = 100_000


@dataclass
class FileSnapshot:
    path: str
    content: str
    existed_before: bool

    @classmethod
    def capture(cls, path: str) -> "FileSnapshot":
        """Read the current state of ``path`` (missing files capture as existed_before=False)."""
        p = Path(path)
        if p.is_file():
            return cls(path=str(p), content=p.read_text(encoding="utf-8", errors="replace"),
                       existed_before=True)
        return cls(path=str(p), content="", existed_before=False)

    @property
    def cache_key(self) -> Tuple[str, bool]:
        return (self.path, self.existed_before)


@dataclass
class ConversationSnapshot:
    message_index: int
    message_preview: str
    files: List[FileSnapshot]
    timestamp: float = field(default_factory=time.time)


@dataclass
class RedoState:
    target_message_index: int
    files: List[FileSnapshot]
    removed_message_count: int


@dataclass
class RestoreResult:
    files_restored: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    message_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


class SnapshotStore:
    """Owns the snapshot list, the content cache and the redo stack."""

    def __init__(self, max_snapshots: int = MAX_SNAPSHOTS, max_file_size: int = MAX_FILE_SIZE,
                 logger: Optional[logging.Logger] = None):
        self.max_snapshots = max_snapshots
        self.max_file_size = max_file_size
        self.log = logger or get_logger("snapshots")
        self._snapshots: List[ConversationSnapshot] = []
        self._redo_stack: List[RedoState] = []
        self._cache: Dict[Tuple[str, bool], str] = {}
        self._session_active = True

    # ── Recording ────────────────────────────────────────────

    def create_snapshot(
        self,
        message_index: int,
        message_preview: str,
        files: Iterable[FileSnapshot],
    ) -> Optional[ConversationSnapshot]:
        """Commit the pre-turn state of ``files``.

        Oversized files and files whose content matches the cache for
        their (path, existed) key are skipped; nothing is stored when
        every file is skipped. Returns the stored snapshot, if any.
        """
        if not self._session_active:
            return None

        by_path: Dict[str, FileSnapshot] = {}
        for f in files:
            if len(f.content) > self.max_file_size:
                self.log.info("Snapshot skips %s (%d chars, limit %d)",
                              f.path, len(f.content), self.max_file_size)
                continue
            by_path.setdefault(f.path, f)

        kept: List[FileSnapshot] = []
        for f in by_path.values():
            if self._cache.get(f.cache_key) == f.content:
                continue
            kept.append(f)
            self._cache[f.cache_key] = f.content
        if not kept:
            return None

        # A snapshot older than the newest one means history was rewound
        if self._snapshots and message_index < self._snapshots[-1].message_index:
            self._snapshots = [s for s in self._snapshots if s.message_index <= message_index]

        snapshot = ConversationSnapshot(
            message_index=message_index,
            message_preview=message_preview[:100],
            files=kept,
        )
        self._snapshots.append(snapshot)
        self._redo_stack.clear()
        self._optimize()
        self.log.info("Snapshot @%d: %s", message_index, ", ".join(f.path for f in kept))
        return snapshot

    def _optimize(self) -> None:
        if len(self._snapshots) > self.max_snapshots:
            self._snapshots = self._snapshots[-self.max_snapshots:]
        self._cache.clear()
        for snapshot in self._snapshots:
            for f in snapshot.files:
                self._cache[f.cache_key] = f.content

    # ── Queries ──────────────────────────────────────────────

    def get_snapshots(self) -> List[ConversationSnapshot]:
        return list(self._snapshots)

    def can_undo(self) -> bool:
        return bool(self._snapshots)

    def can_redo(self) -> bool:
        return bool(self._redo_stack)

    def cache_stats(self) -> Dict[str, int]:
        return {
            "snapshot_count": len(self._snapshots),
            "cached_files_count": len(self._cache),
            "estimated_size": sum(len(f.content) for s in self._snapshots for f in s.files),
        }

    # ── Lifecycle ────────────────────────────────────────────

    def clear(self) -> None:
        self._snapshots = []
        self._redo_stack = []
        self._cache.clear()

    def remove_snapshots_after(self, message_index: int) -> None:
        """Forget snapshots past ``message_index`` without touching any file."""
        self._snapshots = [s for s in self._snapshots if s.message_index <= message_index]
        self._redo_stack = []
        self._optimize()

    def end_session(self) -> None:
        self._session_active = False
        self.clear()

    def start_new_session(self) -> None:
        self._session_active = True
        self.clear()

    # ── Undo / redo ──────────────────────────────────────────

    def undo(self, to_message_index: int, current_message_count: int) -> RestoreResult:
        """Restore every file changed after ``to_message_index``."""
        to_restore = [s for s in self._snapshots if s.message_index > to_message_index]

        paths: List[str] = []
        for snapshot in to_restore:
            for f in snapshot.files:
                if f.path not in paths:
                    paths.append(f.path)

        current: List[FileSnapshot] = []
        for path in paths:
            try:
                current.append(FileSnapshot.capture(path))
            except OSError as e:
                self.log.warning("Could not capture %s before undo: %s", path, e)

        removed = max(0, current_message_count - to_message_index - 1)
        self._redo_stack.append(RedoState(
            target_message_index=to_message_index,
            files=current,
            removed_message_count=removed,
        ))

        # Earliest snapshot after the target holds the state closest to it
        versions: Dict[str, FileSnapshot] = {}
        for snapshot in to_restore:
            for f in snapshot.files:
                versions.setdefault(f.path, f)

        result = _apply(versions.values())
        result.message_count = removed
        self._snapshots = [s for s in self._snapshots if s.message_index <= to_message_index]
        self._optimize()
        self.log.info("Undo to @%d: restored=%d errors=%d",
                      to_message_index, len(result.files_restored), len(result.errors))
        return result

    def redo(self) -> Optional[RestoreResult]:
        """Reapply the most recent undo, or return None if there is nothing to redo."""
        if not self._redo_stack:
            return None
        state = self._redo_stack.pop()
        result = _apply(state.files)
        result.message_count = state.removed_message_count
        self.log.info("Redo to @%d: restored=%d errors=%d",
                      state.target_message_index, len(result.files_restored), len(result.errors))
        return result


def _apply(files: Iterable[FileSnapshot]) -> RestoreResult:
    """Write back (or delete) each file; collect failures instead of stopping."""
    result = RestoreResult()
    for f in files:
        p = Path(f.path)
        try:
            if f.existed_before:
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_text(f.content, encoding="utf-8")
                result.files_restored.append(f.path)
            elif p.exists():
                p.unlink()
                result.files_restored.append(f.path)
        except OSError as e:
            result.errors.append(f"Failed to restore {f.path}: {e}")
    return result

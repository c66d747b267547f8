"""
Thread persistence for the editor agent.
Stores the thread collection, the current thread id and the auto-approve
policy as one JSON file per workspace so a restarted editor resumes where the
user left off. Pending changes and checkpoints are live-process state and are
never written here.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from agent.models import Thread, thread_from_dict, thread_to_dict

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = os.path.join(os.path.expanduser("~"), ".editor-agent", "threads")

STORAGE_VERSION = 1


@dataclass
class PersistedState:
    """The subset of store state that survives a restart."""
    threads: Dict[str, Thread] = field(default_factory=dict)
    current_thread_id: Optional[str] = None
    auto_approve: Dict[str, bool] = field(default_factory=dict)


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a working directory path."""
    return hashlib.sha256(os.path.abspath(working_directory).encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ThreadStorage:
    """
    Reads and writes the persisted agent state for one workspace.

    File layout:  {base_dir}/{dir_hash}_threads.json
    """

    def __init__(self, working_directory: str, base_dir: str = DEFAULT_BASE_DIR):
        self.base_dir = base_dir
        self.working_directory = os.path.abspath(working_directory)
        os.makedirs(self.base_dir, exist_ok=True)

    @property
    def path(self) -> str:
        return os.path.join(self.base_dir, f"{_dir_hash(self.working_directory)}_threads.json")

    def save(self, state: PersistedState) -> str:
        """Write state atomically (tmp file + rename). Returns the file path."""
        data: Dict[str, Any] = {
            "version": STORAGE_VERSION,
            "working_directory": self.working_directory,
            "updated_at": _now_iso(),
            "current_thread_id": state.current_thread_id,
            "auto_approve": dict(state.auto_approve),
            "threads": {tid: thread_to_dict(t) for tid, t in state.threads.items()},
        }
        path = self.path
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.debug(f"Threads saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return path

    def load(self) -> Optional[PersistedState]:
        """Load persisted state, or None when nothing usable is on disk."""
        path = self.path
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            threads = {tid: thread_from_dict(t) for tid, t in (data.get("threads") or {}).items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to read threads {path}: {e}")
            return None
        current = data.get("current_thread_id")
        if current not in threads:
            current = None
        return PersistedState(
            threads=threads,
            current_thread_id=current,
            auto_approve={k: bool(v) for k, v in (data.get("auto_approve") or {}).items()},
        )

    def delete(self) -> bool:
        """Delete the persisted file. Returns True if deleted."""
        path = self.path
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Threads deleted: {path}")
            return True
        return False

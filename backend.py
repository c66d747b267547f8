"""
Backend abstraction for file and command operations.
Also declares the interfaces of the external language-server and semantic
index collaborators used by read-only tools.
"""

import fnmatch
import logging
import os
import shutil
import signal
import subprocess
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)

# Files an agent may read but never modify.
_SENSITIVE_NAMES = {
    ".env", ".env.local", ".env.production", ".npmrc", ".pypirc", ".netrc",
    "id_rsa", "id_dsa", "id_ecdsa", "id_ed25519", "known_hosts", "authorized_keys",
}
_SENSITIVE_GLOBS = ("*.pem", "*.key", "*.p12", "*.pfx", "*.keystore")
_SENSITIVE_DIRS = {".git", ".ssh", ".aws", ".gnupg"}


def is_sensitive_path(path: str) -> bool:
    """True for credential/key files and VCS internals."""
    parts = os.path.normpath(path).split(os.sep)
    if any(p in _SENSITIVE_DIRS for p in parts[:-1]):
        return True
    name = parts[-1] if parts else ""
    if name in _SENSITIVE_NAMES:
        return True
    return any(fnmatch.fnmatch(name, g) for g in _SENSITIVE_GLOBS)


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file or directory exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def is_file(self, path: str) -> bool:
        """Check if a path is a file."""

    @abstractmethod
    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def remove_dir(self, path: str, recursive: bool = False) -> None:
        """Delete a directory (must be empty unless recursive)."""

    @abstractmethod
    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    def cancel_running_command(self) -> bool:
        """Kill the currently running command, if any. Returns True if killed."""
        return False

    @abstractmethod
    def search(self, pattern: str, path: str, include: Optional[str] = None,
               is_regex: bool = True, cwd: str = ".") -> str:
        """Search file contents. Returns `path:line:text` lines."""

    def read_file_or_none(self, path: str) -> Optional[str]:
        """Read a file, returning None when it does not exist."""
        if not self.is_file(path):
            return None
        return self.read_file(path)

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory. Overridden by backends."""
        pass

    def sandbox_path(self, path: str, allow_sensitive: bool = False) -> str:
        """Resolve a tool-supplied path and enforce workspace sandboxing.

        Raises ValueError when the path escapes the workspace or targets a
        sensitive file without read-only access.
        """
        if not isinstance(path, str) or not path.strip():
            raise ValueError("Invalid path: empty")
        if "\x00" in path:
            raise ValueError("Invalid path: contains NUL byte")
        resolved = self.resolve_path(path.strip())
        self._ensure_under_working(resolved)
        if not allow_sensitive and is_sensitive_path(resolved):
            raise ValueError(f"Security: Cannot modify sensitive file {path!r}")
        return resolved


# ============================================================
# Local Backend
# ============================================================

# Cache ripgrep availability
_HAS_RIPGREP: Optional[bool] = None


def _has_ripgrep() -> bool:
    global _HAS_RIPGREP
    if _HAS_RIPGREP is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _HAS_RIPGREP = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _HAS_RIPGREP = False
    return _HAS_RIPGREP


class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._active_process: Optional[subprocess.Popen] = None

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full(self, path: str) -> str:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        return full

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self._full(path)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory", "path": child})
            elif os.path.isfile(child):
                _, ext = os.path.splitext(name)
                entries.append({
                    "name": name, "type": "file", "path": child,
                    "ext": ext.lstrip("."),
                    "size": os.path.getsize(child),
                })
        return entries

    def read_file(self, path: str) -> str:
        with open(self._full(path), "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def file_exists(self, path: str) -> bool:
        return os.path.exists(self._full(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self._full(path))

    def is_file(self, path: str) -> bool:
        return os.path.isfile(self._full(path))

    def mkdir(self, path: str) -> None:
        os.makedirs(self._full(path), exist_ok=True)

    def remove_file(self, path: str) -> None:
        os.remove(self._full(path))

    def remove_dir(self, path: str, recursive: bool = False) -> None:
        full = self._full(path)
        if full == self._working_directory:
            raise ValueError("Refusing to delete the workspace root")
        if recursive:
            shutil.rmtree(full)
        else:
            os.rmdir(full)

    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        full_cwd = self._full(cwd) if cwd not in ("", ".") else self._working_directory
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            start_new_session=True,  # own process group for clean kill
        )
        self._active_process = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        finally:
            self._active_process = None
        return stdout or "", stderr or "", proc.returncode

    def cancel_running_command(self) -> bool:
        """Kill the currently running subprocess, if any. Returns True if killed."""
        proc = self._active_process
        if proc and proc.poll() is None:
            self._kill_process(proc)
            return True
        return False

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def search(self, pattern: str, path: str, include: Optional[str] = None,
               is_regex: bool = True, cwd: str = ".") -> str:
        search_path = self._full(path)

        if _has_ripgrep():
            cmd = ["rg", "--line-number", "--no-heading", "--color=never", "-i", "-m", "100"]
            if not is_regex:
                cmd.append("--fixed-strings")
            if include:
                cmd.extend(["--glob", include])
            cmd.extend(["--", pattern, search_path])
        else:
            cmd = ["grep", "-rn", "-i", "--color=never"]
            cmd.append("-E" if is_regex else "-F")
            if include:
                cmd.extend(["--include", include])
            cmd.extend(["--", pattern, search_path])

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=15,
                                cwd=self._working_directory)
        return result.stdout.strip() if result.stdout else ""


# ============================================================
# External collaborators (implemented by the host editor)
# ============================================================

class LanguageServer(ABC):
    """Language-server queries used by read-only tools.

    Positions are 0-based (LSP convention). Locations are dicts with
    ``path`` and ``line`` keys; diagnostics carry ``severity`` (error,
    warning, info), ``message`` and ``line``.
    """

    @abstractmethod
    async def get_diagnostics(self, path: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def definition(self, path: str, line: int, character: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def references(self, path: str, line: int, character: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def hover(self, path: str, line: int, character: int) -> Optional[str]:
        ...

    @abstractmethod
    async def document_symbols(self, path: str) -> List[Dict[str, Any]]:
        ...


class SearchIndex(ABC):
    """Semantic code index. Results: {relative_path, start_line, end_line, score, content}."""

    @abstractmethod
    async def search(self, query: str, top_k: int = 10) -> List[Dict[str, Any]]:
        ...

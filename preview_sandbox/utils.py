"""
Utility functions shared by the sandbox components.
"""

import asyncio
import re
from collections import defaultdict
from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, List, Optional
from contextlib import asynccontextmanager


def safe_name(value: str, max_length: int = 40) -> str:
    """
    Turn an arbitrary identifier into a string usable as a container/image name.

    Args:
        value: Identifier such as a sandbox or project id
        max_length: Maximum length of the result

    Returns:
        Lowercase string of [a-z0-9_.-] characters
    """
    name = value[:max_length].strip()

    # Replace whitespace with dashes
    name = re.sub(r'\s+', '-', name)

    # Remove characters the engine rejects in names
    name = re.sub(r'[^\w.\-]', '', name)

    # Names must start with an alphanumeric character
    name = name.strip('_.-')

    if not name:
        name = "sandbox"

    return name.lower()


def normalize_path(path: str) -> str:
    """
    Normalize a generated file path to a relative POSIX path.

    Raises:
        ValueError: If the path escapes the project root
    """
    normalized = path.replace("\\", "/").lstrip("/")
    parts = [p for p in normalized.split("/") if p not in ("", ".")]
    if not parts or any(p == ".." for p in parts):
        raise ValueError(f"Invalid project file path: {path!r}")
    return "/".join(parts)


def write_project_files(root: Path, files: Dict[str, str]) -> List[Path]:
    """
    Write a path->content file set below `root`.

    Args:
        root: Directory to write into (created if missing)
        files: Dictionary mapping file paths to file contents

    Returns:
        List of written paths
    """
    root.mkdir(parents=True, exist_ok=True)
    written = []
    for file_path, content in files.items():
        full_path = root / normalize_path(file_path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        written.append(full_path)
    return written


def decode_log_lines(raw: bytes) -> List[str]:
    """Split raw container output into non-empty lines."""
    text = raw.decode("utf-8", errors="replace")
    return [line for line in text.splitlines() if line.strip()]


def tail(lines: Iterable[str], limit: int) -> List[str]:
    """Keep the last `limit` lines."""
    items = list(lines)
    if limit <= 0:
        return []
    return items[-limit:]


class KeyedLock:
    """
    One asyncio.Lock per key.

    Serializes operations on the same sandbox id while letting different ids
    proceed concurrently. Locks are dropped once nobody holds or waits on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        self._users[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock: Optional[asyncio.Lock] = self._locks.get(key)
        return bool(lock and lock.locked())

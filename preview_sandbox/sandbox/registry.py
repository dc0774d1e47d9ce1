"""
Sandbox Registry - Durable store of sandbox metadata.

Responsibilities:
- Create, read, update and delete sandbox records
- Enforce the status state machine on every write
- Compare-and-set updates so poll-derived writes yield to explicit ones
- Keep the log tail bounded

The registry is the single writer of record: callers always get copies and
write back through update(), never by mutating a record they hold.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List, Optional, Union

from preview_sandbox.schemas import Sandbox, SandboxStatus, can_transition, utcnow
from preview_sandbox.sandbox.errors import InvalidTransition, NotFound
from preview_sandbox.utils import tail

logger = logging.getLogger(__name__)


# Fields a caller may change after creation
UPDATABLE_FIELDS = frozenset({"runtime_id", "url", "port", "status", "type", "framework", "logs"})

ExpectedStatus = Union[SandboxStatus, Collection[SandboxStatus], None]


# =============================================================================
# CONTRACT
# =============================================================================

class SandboxRegistry(ABC):
    """Persistence contract for sandbox records."""

    @abstractmethod
    async def create(self, record: Sandbox) -> Sandbox:
        """Store a new record. Raises ValueError if the id already exists."""

    @abstractmethod
    async def update(
        self,
        sandbox_id: str,
        expected_status: ExpectedStatus = None,
        append_logs: Optional[Iterable[str]] = None,
        **fields: Any,
    ) -> Optional[Sandbox]:
        """
        Apply a partial update.

        Args:
            sandbox_id: Record to update
            expected_status: If given, only apply when the current status matches
            append_logs: Lines appended to the log tail
            **fields: New values for UPDATABLE_FIELDS

        Returns:
            The updated record, or None when expected_status did not match

        Raises:
            NotFound: If the record does not exist
            InvalidTransition: If the status change is not allowed
        """

    @abstractmethod
    async def get(self, sandbox_id: str) -> Optional[Sandbox]:
        """Return a copy of the record, or None."""

    @abstractmethod
    async def find(self, project_id: str) -> List[Sandbox]:
        """Return all records of a project."""

    @abstractmethod
    async def delete(self, sandbox_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    async def list_all(self) -> List[Sandbox]:
        """Return every record, oldest first."""

    async def list_by_status(self, *statuses: SandboxStatus) -> List[Sandbox]:
        wanted = set(statuses)
        return [r for r in await self.list_all() if r.status in wanted]


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemorySandboxRegistry(SandboxRegistry):
    """Process-local registry. Row consistency comes from a single asyncio lock."""

    def __init__(self, log_tail_lines: int = 200):
        self.log_tail_lines = log_tail_lines
        self._records: Dict[str, Sandbox] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: Sandbox) -> Sandbox:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Sandbox already exists: {record.id}")
            stored = record.model_copy(deep=True)
            stored.logs = tail(stored.logs, self.log_tail_lines)
            self._records[record.id] = stored
            await self._persist()
            return stored.model_copy(deep=True)

    async def update(
        self,
        sandbox_id: str,
        expected_status: ExpectedStatus = None,
        append_logs: Optional[Iterable[str]] = None,
        **fields: Any,
    ) -> Optional[Sandbox]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            current = self._records.get(sandbox_id)
            if current is None:
                raise NotFound(sandbox_id)

            if expected_status is not None and not _matches(current.status, expected_status):
                logger.debug(
                    "Skipping update of %s: status is %s, expected %s",
                    sandbox_id, current.status.value, expected_status,
                )
                return None

            new_status = fields.get("status")
            if new_status is not None:
                new_status = SandboxStatus(new_status)
                if not can_transition(current.status, new_status):
                    raise InvalidTransition(
                        f"Sandbox {sandbox_id}: {current.status.value} -> {new_status.value} is not allowed"
                    )
                fields["status"] = new_status

            updated = current.model_copy(deep=True, update=fields)
            logs = list(updated.logs)
            if append_logs:
                logs.extend(append_logs)
            updated.logs = tail(logs, self.log_tail_lines)
            updated.updated_at = utcnow()

            self._records[sandbox_id] = updated
            await self._persist()
            return updated.model_copy(deep=True)

    async def get(self, sandbox_id: str) -> Optional[Sandbox]:
        async with self._lock:
            record = self._records.get(sandbox_id)
            return record.model_copy(deep=True) if record else None

    async def find(self, project_id: str) -> List[Sandbox]:
        async with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.project_id == project_id
            ]

    async def delete(self, sandbox_id: str) -> bool:
        async with self._lock:
            removed = self._records.pop(sandbox_id, None)
            if removed is not None:
                await self._persist()
            return removed is not None

    async def list_all(self) -> List[Sandbox]:
        async with self._lock:
            records = [r.model_copy(deep=True) for r in self._records.values()]
        return sorted(records, key=lambda r: r.created_at)

    async def _persist(self) -> None:
        """Hook for durable subclasses. Called with the lock held."""
        return None


def _matches(status: SandboxStatus, expected: ExpectedStatus) -> bool:
    if isinstance(expected, SandboxStatus):
        return status == expected
    return status in set(expected)


# =============================================================================
# JSON FILE IMPLEMENTATION
# =============================================================================

class JsonFileSandboxRegistry(InMemorySandboxRegistry):
    """
    Registry persisted to a JSON file.

    Loads existing records on construction and rewrites the file after every
    change.
    """

    def __init__(self, path: Path, log_tail_lines: int = 200):
        super().__init__(log_tail_lines=log_tail_lines)
        self.path = Path(path)
        self._load_registry()

    def _load_registry(self):
        """Load registry from file."""
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._records = {k: Sandbox.model_validate(v) for k, v in data.items()}
        except (json.JSONDecodeError, ValueError) as e:
            logger.error("Ignoring unreadable registry file %s: %s", self.path, e)
            self._records = {}

    async def _persist(self) -> None:
        data = {k: v.model_dump(mode="json") for k, v in self._records.items()}
        await asyncio.to_thread(self._save_registry, data)

    def _save_registry(self, data: Dict[str, Any]) -> None:
        """Save registry to file atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

"""Persistent registry of terminal server launches."""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Set
import logging

from .models import INSTANCE_TRANSITIONS, InstanceRecord, InstanceStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 500


class RegistryStore(Protocol):
    """Persistence backend for InstanceRecords."""

    def load(self) -> List[InstanceRecord]:
        ...

    def save(self, records: List[InstanceRecord]) -> bool:
        ...


class JsonRegistryStore:
    """Stores records as a JSON list, rewritten atomically on every save."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser()

    def load(self) -> List[InstanceRecord]:
        """
        Load records from disk.

        Returns:
            Records in file order. Missing or unreadable files yield an empty list.
        """
        if not self.path.exists():
            return []  # No registry file is not an error

        try:
            with open(self.path) as f:
                data = json.load(f)
        except Exception as e:
            logger.error(f"Failed to load instance registry from {self.path}: {e}")
            return []

        records = []
        for item in data if isinstance(data, list) else []:
            try:
                records.append(InstanceRecord.from_dict(item))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed instance record: {e}")
        return records

    def save(self, records: List[InstanceRecord]) -> bool:
        """
        Save records using temp file + rename.

        Returns:
            True if saved, False if an error occurred
        """
        temp_file = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump([r.to_dict() for r in records], f, indent=2)

            # Atomic rename (POSIX guarantees atomicity)
            temp_file.rename(self.path)
            return True

        except Exception as e:
            logger.error(f"Failed to save instance registry to {self.path}: {e}")
            logger.error("Registry NOT persisted; in-memory state remains authoritative")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False


class InstanceRegistry:
    """
    In-memory InstanceRecords with a per-session active index.

    All mutations go through this class. Each one rebuilds the
    session -> active record index and persists through the store.
    Mutations hold a lock since orchestrator work runs in worker threads.
    """

    def __init__(self, store: RegistryStore, max_records: int = DEFAULT_MAX_RECORDS):
        self.store = store
        self.max_records = max_records
        self.records: Dict[str, InstanceRecord] = {}
        self.active_by_session: Dict[str, str] = {}
        self._lock = threading.RLock()

    def load(self, is_alive: Optional[Callable[[int], bool]] = None) -> int:
        """
        Load persisted records, then mark any whose process is gone as dead.

        Returns:
            Number of records loaded
        """
        with self._lock:
            self.records = {record.id: record for record in self.store.load()}
            self._rebuild_index()
        logger.info(f"Loaded {len(self.records)} instance records")
        if is_alive is not None:
            self.validate_all_active(is_alive)
        return len(self.records)

    def _rebuild_index(self) -> None:
        index: Dict[str, str] = {}
        # Oldest first so a newer active record wins if the file was edited by hand
        for record in sorted(list(self.records.values()), key=lambda r: r.started_at):
            if record.status.is_active:
                index[record.session_id] = record.id
        self.active_by_session = index

    def _commit(self) -> bool:
        """Trim, rebuild the index and persist."""
        ordered = sorted(list(self.records.values()), key=lambda r: r.started_at, reverse=True)
        if len(ordered) > self.max_records:
            ordered = ordered[: self.max_records]
            self.records = {r.id: r for r in ordered}
        self._rebuild_index()
        return self.store.save(ordered)

    def get(self, record_id: str) -> Optional[InstanceRecord]:
        return self.records.get(record_id)

    def get_all(self) -> List[InstanceRecord]:
        """All records, newest first."""
        return sorted(list(self.records.values()), key=lambda r: r.started_at, reverse=True)

    def recent(self, limit: int = 50) -> List[InstanceRecord]:
        return self.get_all()[:limit]

    def active(self) -> List[InstanceRecord]:
        records = self.records
        return [records[rid] for rid in list(self.active_by_session.values()) if rid in records]

    def active_for_session(self, session_id: str) -> Optional[InstanceRecord]:
        record_id = self.active_by_session.get(session_id)
        return self.records.get(record_id) if record_id else None

    def by_session(self, session_id: str) -> List[InstanceRecord]:
        return [r for r in self.get_all() if r.session_id == session_id]

    def by_status(self, status: InstanceStatus) -> List[InstanceRecord]:
        return [r for r in self.get_all() if r.status == status]

    def active_ports(self) -> Set[int]:
        return {r.port for r in self.active()}

    def upsert(self, record: InstanceRecord) -> bool:
        """
        Insert or replace a record.

        Refused when it would give a session a second active record, or bring
        a stopped/dead record back to life.

        Returns:
            True if the record was stored
        """
        with self._lock:
            existing = self.records.get(record.id)
            if existing and existing.status.is_terminal and record.status.is_active:
                logger.warning(f"Refusing to reactivate {existing.status.value} instance {record.id}")
                return False

            if record.status.is_active:
                holder = self.active_by_session.get(record.session_id)
                if holder and holder != record.id:
                    logger.warning(
                        f"Refusing second active instance for session {record.session_id} "
                        f"(already held by {holder})"
                    )
                    return False

            self.records[record.id] = record
            self._commit()
            return True

    def transition(self, record_id: str, status: InstanceStatus) -> bool:
        """
        Move a record to a new status if the state machine allows it.

        Returns:
            True if the record now has the requested status
        """
        with self._lock:
            record = self.records.get(record_id)
            if not record:
                return False
            if record.status == status:
                return True
            if status not in INSTANCE_TRANSITIONS[record.status]:
                logger.warning(
                    f"Illegal instance transition {record.status.value} -> {status.value} for {record_id}"
                )
                return False

            record.status = status
            if status.is_terminal:
                record.stopped_at = datetime.now()
            self._commit()
            return True

    def mark_running(self, record_id: str) -> bool:
        return self.transition(record_id, InstanceStatus.RUNNING)

    def mark_stopped(self, record_id: str) -> bool:
        return self.transition(record_id, InstanceStatus.STOPPED)

    def mark_dead(self, record_id: str) -> bool:
        return self.transition(record_id, InstanceStatus.DEAD)

    def reassign_session(self, record_id: str, session_id: str) -> bool:
        """Point an active record at a different logical session."""
        with self._lock:
            record = self.records.get(record_id)
            if not record or not record.status.is_active:
                return False
            holder = self.active_by_session.get(session_id)
            if holder and holder != record_id:
                logger.warning(f"Cannot reassign {record_id} to {session_id}: held by {holder}")
                return False

            record.session_id = session_id
            self._commit()
            return True

    def validate_all_active(self, is_alive: Callable[[int], bool]) -> List[InstanceRecord]:
        """
        Mark every active record whose pid is no longer alive as dead.

        Returns:
            Records that were marked dead
        """
        now = datetime.now()
        died = []
        with self._lock:
            for record in self.active():
                if is_alive(record.pid):
                    record.last_validated_at = now
                    continue
                record.status = InstanceStatus.DEAD
                record.stopped_at = now
                died.append(record)
                logger.info(f"Instance {record.id} for session {record.session_id} (pid {record.pid}) is dead")

            if died:
                self._commit()
        return died

"""
store.py - Persisted collections of lots and positions

Two collections are persisted: 'lots' (WrittenOption) and 'positions'
(OpenPosition). Each has a version number that increments on every commit
that touches it.

Writes are keyed upserts: a record replaces the stored record with the same
id, new ids are appended. Nothing is overwritten wholesale, so two clients
touching different records never lose each other's work.

Conflict handling:
    - REJECT_STALE (default): commit() compares the versions the caller read
      against the current versions and raises StaleCollectionRead on mismatch.
    - LAST_WRITER_WINS: versions are ignored.

Subscribers receive a ChangeNotice per touched collection after each
successful commit. write() saves and returns the notices without delivering
them; publish() delivers them. commit() does both.

Implementations:
    - InMemoryPositionStore: process-local
    - JsonFilePositionStore: one JSON document on disk, replaced atomically
"""

from __future__ import annotations
import json
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .core import SeriesKey, StaleCollectionRead, RecordNotFound
from .records import WrittenOption, OpenPosition, pending_lots_for


LOTS = 'lots'
POSITIONS = 'positions'


class ConflictPolicy(Enum):
    REJECT_STALE = "reject_stale"
    LAST_WRITER_WINS = "last_writer_wins"


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    """Consistent read of both collections with their versions."""
    lots: Tuple[WrittenOption, ...]
    positions: Tuple[OpenPosition, ...]
    lots_version: int
    positions_version: int

    @property
    def versions(self) -> Dict[str, int]:
        return {LOTS: self.lots_version, POSITIONS: self.positions_version}

    def lot(self, lot_id: str) -> WrittenOption:
        for lot in self.lots:
            if lot.id == lot_id:
                return lot
        raise RecordNotFound("lot", lot_id)

    def position(self, position_id: str) -> OpenPosition:
        for position in self.positions:
            if position.id == position_id:
                return position
        raise RecordNotFound("position", position_id)

    def pending_lots(self, series: SeriesKey) -> List[WrittenOption]:
        return pending_lots_for(list(self.lots), series)


@dataclass(frozen=True, slots=True)
class ChangeNotice:
    """Delivered to subscribers after a commit touches a collection."""
    collection: str
    version: int
    record_ids: Tuple[str, ...]


Listener = Callable[[ChangeNotice], None]


def _upsert(existing: List[Any], updates: Iterable[Any]) -> List[Any]:
    """Replace records by id, appending unknown ids, preserving order."""
    merged: Dict[str, Any] = {record.id: record for record in existing}
    for record in updates:
        merged[record.id] = record
    return list(merged.values())


class PositionStore:
    """
    Base store: versioning, keyed upsert, conflict policy and notifications.

    Subclasses implement _load() and _save() for their medium.
    """

    def __init__(self, conflict_policy: ConflictPolicy = ConflictPolicy.REJECT_STALE):
        self.conflict_policy = conflict_policy
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Medium
    # ------------------------------------------------------------------

    def _load(self) -> StoreSnapshot:
        raise NotImplementedError

    def _save(self, snapshot: StoreSnapshot) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def read(self) -> StoreSnapshot:
        return self._load()

    def commit(
        self,
        lots: Iterable[WrittenOption] = (),
        positions: Iterable[OpenPosition] = (),
        expected_versions: Optional[Dict[str, int]] = None,
    ) -> StoreSnapshot:
        """
        Upsert records into both collections in one step, then notify.

        Same as write() followed by publish(). A listener that raises does
        so after the records are saved; the write stands.

        Returns:
            The snapshot after the write

        Raises:
            StaleCollectionRead: Under REJECT_STALE, if any expected version
                is behind the current one
        """
        updated, notices = self.write(lots, positions, expected_versions)
        self.publish(notices)
        return updated

    def write(
        self,
        lots: Iterable[WrittenOption] = (),
        positions: Iterable[OpenPosition] = (),
        expected_versions: Optional[Dict[str, int]] = None,
    ) -> Tuple[StoreSnapshot, List[ChangeNotice]]:
        """
        Upsert records into both collections without notifying anyone.

        Args:
            lots: Lot records to upsert
            positions: Position records to upsert
            expected_versions: {'lots': n, 'positions': m} as read by the
                caller. Checked for every collection before anything is
                written.

        Returns:
            (snapshot after the write, notices to hand to publish())

        Raises:
            StaleCollectionRead: Under REJECT_STALE, if any expected version
                is behind the current one
        """
        lots = list(lots)
        positions = list(positions)
        current = self._load()

        if expected_versions and self.conflict_policy is ConflictPolicy.REJECT_STALE:
            for collection, actual in current.versions.items():
                expected = expected_versions.get(collection)
                if expected is not None and expected != actual:
                    raise StaleCollectionRead(collection, expected, actual)

        if not lots and not positions:
            return current, []

        updated = StoreSnapshot(
            lots=tuple(_upsert(list(current.lots), lots)) if lots else current.lots,
            positions=tuple(_upsert(list(current.positions), positions)) if positions else current.positions,
            lots_version=current.lots_version + (1 if lots else 0),
            positions_version=current.positions_version + (1 if positions else 0),
        )
        self._save(updated)

        notices = []
        if lots:
            notices.append(ChangeNotice(LOTS, updated.lots_version, tuple(r.id for r in lots)))
        if positions:
            notices.append(ChangeNotice(POSITIONS, updated.positions_version, tuple(r.id for r in positions)))
        return updated, notices

    def publish(self, notices: Iterable[ChangeNotice]) -> None:
        """Deliver notices from write() to every listener, in order."""
        for notice in notices:
            for listener in list(self._listeners):
                listener(notice)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class InMemoryPositionStore(PositionStore):
    """Store held in process memory."""

    def __init__(self, conflict_policy: ConflictPolicy = ConflictPolicy.REJECT_STALE):
        super().__init__(conflict_policy)
        self._snapshot = StoreSnapshot(lots=(), positions=(), lots_version=0, positions_version=0)

    def _load(self) -> StoreSnapshot:
        return self._snapshot

    def _save(self, snapshot: StoreSnapshot) -> None:
        self._snapshot = snapshot


class JsonFilePositionStore(PositionStore):
    """
    Store backed by a single JSON document.

    The file is re-read on every access so that writes from other processes
    are observed, and replaced atomically (temp file + os.replace) on commit.
    A missing file reads as two empty collections at version 0.

    Document layout:
        {
          "lots":      {"version": 3, "records": [...]},
          "positions": {"version": 2, "records": [...]}
        }
    """

    def __init__(
        self,
        path: Union[str, Path],
        conflict_policy: ConflictPolicy = ConflictPolicy.REJECT_STALE,
    ):
        super().__init__(conflict_policy)
        self.path = Path(path)

    def _load(self) -> StoreSnapshot:
        if not self.path.exists():
            return StoreSnapshot(lots=(), positions=(), lots_version=0, positions_version=0)
        with open(self.path, 'r', encoding='utf-8') as f:
            document = json.load(f)
        lots_section = document.get(LOTS, {})
        positions_section = document.get(POSITIONS, {})
        return StoreSnapshot(
            lots=tuple(WrittenOption.from_record(r) for r in lots_section.get('records', [])),
            positions=tuple(OpenPosition.from_record(r) for r in positions_section.get('records', [])),
            lots_version=int(lots_section.get('version', 0)),
            positions_version=int(positions_section.get('version', 0)),
        )

    def _save(self, snapshot: StoreSnapshot) -> None:
        document = {
            LOTS: {
                'version': snapshot.lots_version,
                'records': [lot.to_record() for lot in snapshot.lots],
            },
            POSITIONS: {
                'version': snapshot.positions_version,
                'records': [position.to_record() for position in snapshot.positions],
            },
        }
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=self.path.name, suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def __repr__(self) -> str:
        return f"JsonFilePositionStore({str(self.path)!r})"

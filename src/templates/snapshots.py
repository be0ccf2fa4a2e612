"""
Append-only store of template snapshots.

Snapshots are immutable captures of a draft or published template. Each
template_key has its own snapshot_version sequence 1, 2, 3... with no gaps;
assignment and insert happen under a per-key lock so concurrent snapshots of
one key never share or skip a number.
"""

import logging
from pathlib import Path
from typing import List, Optional

from src.templates.errors import ConflictError, NotFoundError
from src.templates.locking import KeyedLock
from src.templates.schemas import Scope, TemplateSnapshot
from src.templates.storage import JsonTable
from src.templates.versioning import next_version


logger = logging.getLogger(__name__)


class SnapshotStore:
    """Snapshot persistence with gap-free per-key versioning."""

    def __init__(self, data_dir: Optional[Path] = None):
        self._table: JsonTable[TemplateSnapshot] = JsonTable("snapshots", TemplateSnapshot, data_dir)
        self._locks = KeyedLock()

    def _versions(self, scope: Scope, template_key: str) -> List[int]:
        return [s.snapshot_version for s in self.list_for_key(scope, template_key)]

    def next_version(self, scope: Scope, template_key: str) -> int:
        with self._locks.hold((*scope.key(), template_key)):
            return next_version(self._versions(scope, template_key))

    def append(self, snapshot: TemplateSnapshot) -> TemplateSnapshot:
        """
        Persist a snapshot, assigning its snapshot_version.

        The version carried by ``snapshot`` is replaced by the next number in
        the key's sequence, computed while the key lock is held.

        Returns:
            The stored snapshot
        """
        with self._locks.hold((*snapshot.scope.key(), snapshot.template_key)):
            version = next_version(self._versions(snapshot.scope, snapshot.template_key))
            stored = snapshot.model_copy(update={"snapshot_version": version})
            if self._table.get(stored.id) is not None:
                raise ConflictError(f"Snapshot id already exists: {stored.id}", {"id": stored.id})
            self._table.put(stored)

        logger.info(f"Captured snapshot {stored.id} ({stored.template_key} #{version}: {stored.snapshot_name})")
        return stored

    def get(self, scope: Scope, snapshot_id: str) -> Optional[TemplateSnapshot]:
        snapshot = self._table.get(snapshot_id)
        if snapshot is None or not snapshot.in_scope(scope):
            logger.debug(f"Snapshot not found: {snapshot_id}")
            return None
        return snapshot

    def require(self, scope: Scope, snapshot_id: str) -> TemplateSnapshot:
        snapshot = self.get(scope, snapshot_id)
        if snapshot is None:
            raise NotFoundError("Snapshot", snapshot_id)
        return snapshot

    def list_for_key(self, scope: Scope, template_key: str) -> List[TemplateSnapshot]:
        """All snapshots for a key ordered by snapshot_version."""
        rows = self._table.select(lambda s: s.in_scope(scope) and s.template_key == template_key)
        rows.sort(key=lambda s: s.snapshot_version)
        return rows

    def delete(self, scope: Scope, snapshot_id: str) -> bool:
        if self.get(scope, snapshot_id) is None:
            return False
        deleted = self._table.delete(snapshot_id)
        logger.info(f"Deleted snapshot {snapshot_id}")
        return deleted

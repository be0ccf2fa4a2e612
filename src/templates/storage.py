"""
Template storage layer for the process template lifecycle.

Provides repository pattern for template CRUD operations:
- JsonTable: in-process table of validated rows, optionally written through
  to a JSON file and reloaded at startup
- DraftTemplateRepository: mutable drafts with optimistic versioning and a
  per-key draft version sequence
- PublishedTemplateRepository: insert-only published versions whose only
  mutable fields are status, counters and category

Every read returns a deep copy so callers can never mutate stored rows.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from src.templates.errors import ConflictError, NotFoundError
from src.templates.schemas import (
    DraftTemplate,
    PublishedTemplate,
    Scope,
    ScopedModel,
    TemplateStatus,
    utc_now_iso,
)
from src.templates.versioning import check_expected_version


# Configure logging for the storage module
logger = logging.getLogger(__name__)


M = TypeVar("M", bound=BaseModel)


class JsonTable(Generic[M]):
    """
    Table of pydantic rows keyed by id.

    When ``data_dir`` is given the whole table is written to
    ``<data_dir>/<name>.json`` after every change (temp file + replace) and
    loaded back on construction. Rows that fail validation on load are
    skipped with a warning.

    Usage:
        table = JsonTable("drafts", DraftTemplate, data_dir=Path("data"))
        table.put(draft)
        row = table.get(draft.id)
    """

    def __init__(self, name: str, model: Type[M], data_dir: Optional[Path] = None):
        self.name = name
        self.model = model
        self._rows: Dict[str, M] = {}
        self._lock = threading.RLock()
        self._path: Optional[Path] = None

        if data_dir is not None:
            data_dir = Path(data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)
            self._path = data_dir / f"{name}.json"
            self._load()

        logger.debug(f"JsonTable '{name}' initialized with {len(self._rows)} rows (path: {self._path})")

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in table file {self._path}: {e}")
            return

        for raw in data:
            try:
                row = self.model.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid row in {self._path}: {e}")
                continue
            self._rows[row.id] = row

    def _flush(self) -> None:
        if self._path is None:
            return
        tmp_path = self._path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(
                [row.model_dump(mode="json") for row in self._rows.values()],
                f,
                indent=2,
                ensure_ascii=False,
            )
        os.replace(tmp_path, self._path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the table lock across a read-check-write sequence."""
        with self._lock:
            yield

    def get(self, row_id: str) -> Optional[M]:
        with self._lock:
            row = self._rows.get(row_id)
            return row.model_copy(deep=True) if row is not None else None

    def select(self, predicate: Callable[[M], bool]) -> List[M]:
        with self._lock:
            return [row.model_copy(deep=True) for row in self._rows.values() if predicate(row)]

    def put(self, row: M) -> M:
        return self.put_many([row])[0]

    def put_many(self, rows: List[M]) -> List[M]:
        """Write several rows as one change (one flush). Nothing changes if the flush fails."""
        with self._lock:
            previous = dict(self._rows)
            for row in rows:
                self._rows[row.id] = row.model_copy(deep=True)
            self._commit(previous)
        return rows

    def delete(self, row_id: str) -> bool:
        with self._lock:
            previous = dict(self._rows)
            if self._rows.pop(row_id, None) is None:
                return False
            self._commit(previous)
            return True

    def _commit(self, previous: Dict[str, M]) -> None:
        try:
            self._flush()
        except Exception:
            self._rows = previous
            logger.error(f"Flush of table {self.name} failed, in-memory rows rolled back")
            raise

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


def matches_keyword(row: BaseModel, keyword: Optional[str]) -> bool:
    """Case-insensitive match on a row's template_key, template_name and description."""
    if not keyword:
        return True
    needle = keyword.strip().lower()
    haystack = (row.template_key, row.template_name, row.description or "")
    return any(needle in value.lower() for value in haystack)


def paginate(rows: List[M], offset: int, limit: int) -> Tuple[int, List[M]]:
    """Return (total, rows[offset:offset + limit])."""
    return len(rows), rows[offset:offset + limit]


class DraftSequence(ScopedModel):
    """High-water mark of draft versions for one template_key."""
    id: str
    template_key: str
    last_version: int = 0


def _sequence_id(scope: Scope, template_key: str) -> str:
    return "|".join(part or "" for part in (*scope.key(), template_key))


class DraftTemplateRepository:
    """
    Repository for draft templates.

    Drafts are keyed by id with a secondary index on (scope, template_key);
    at most one live draft exists per key. A separate sequence table keeps
    the highest draft version ever issued per key so numbering continues
    after a draft is deleted or restored.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self._table: JsonTable[DraftTemplate] = JsonTable("drafts", DraftTemplate, data_dir)
        self._sequences: JsonTable[DraftSequence] = JsonTable("draft_sequences", DraftSequence, data_dir)

    def get(self, scope: Scope, draft_id: str) -> Optional[DraftTemplate]:
        draft = self._table.get(draft_id)
        if draft is None or not draft.in_scope(scope):
            logger.debug(f"Draft not found: {draft_id}")
            return None
        return draft

    def require(self, scope: Scope, draft_id: str) -> DraftTemplate:
        draft = self.get(scope, draft_id)
        if draft is None:
            raise NotFoundError("Draft template", draft_id)
        return draft

    def find_by_key(self, scope: Scope, template_key: str) -> Optional[DraftTemplate]:
        rows = self._table.select(lambda d: d.in_scope(scope) and d.template_key == template_key)
        return rows[0] if rows else None

    def last_version(self, scope: Scope, template_key: str) -> int:
        """Highest draft version ever issued for the key (0 if none)."""
        seq = self._sequences.get(_sequence_id(scope, template_key))
        return seq.last_version if seq else 0

    def _record_version(self, draft: DraftTemplate) -> None:
        seq_id = _sequence_id(draft.scope, draft.template_key)
        seq = self._sequences.get(seq_id) or DraftSequence(
            id=seq_id,
            template_key=draft.template_key,
            tenant_id=draft.tenant_id,
            app_id=draft.app_id,
            context_id=draft.context_id,
        )
        if draft.version > seq.last_version:
            seq.last_version = draft.version
            self._sequences.put(seq)

    def insert(self, draft: DraftTemplate) -> DraftTemplate:
        """
        Store a new draft.

        Raises:
            ConflictError: If a draft already exists for the same key in scope
        """
        with self._table.transaction():
            existing = self.find_by_key(draft.scope, draft.template_key)
            if existing is not None:
                raise ConflictError(
                    f"A draft already exists for template_key '{draft.template_key}': {existing.id}",
                    {"template_key": draft.template_key, "draft_id": existing.id},
                )
            self._table.put(draft)
            self._record_version(draft)

        logger.info(f"Inserted draft {draft.id} ({draft.template_key} v{draft.version})")
        return draft

    def update(self, draft: DraftTemplate, expected_version: Optional[int]) -> DraftTemplate:
        """
        Save changed draft fields, bumping the version.

        Args:
            draft: Draft carrying the new field values (its version is ignored)
            expected_version: Version the caller last read; None skips the check

        Returns:
            The stored draft with version = previous version + 1

        Raises:
            NotFoundError: If the draft no longer exists
            ConcurrencyError: If expected_version does not match the stored version
        """
        with self._table.transaction():
            stored = self.require(draft.scope, draft.id)
            check_expected_version(draft.id, expected_version, stored.version)
            saved = draft.model_copy(update={
                "version": stored.version + 1,
                "template_key": stored.template_key,
                "created_time": stored.created_time,
                "created_by": stored.created_by,
            })
            self._table.put(saved)
            self._record_version(saved)

        logger.info(f"Updated draft {saved.id} ({saved.template_key} v{stored.version} -> v{saved.version})")
        return saved

    def delete(self, scope: Scope, draft_id: str) -> bool:
        with self._table.transaction():
            if self.get(scope, draft_id) is None:
                return False
            deleted = self._table.delete(draft_id)
        logger.info(f"Deleted draft {draft_id}")
        return deleted

    def list_in_scope(self, scope: Scope) -> List[DraftTemplate]:
        return self._table.select(lambda d: d.in_scope(scope))

    def list_page(
        self,
        scope: Scope,
        category_id: Optional[str] = None,
        keyword: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[int, List[DraftTemplate]]:
        """
        Filtered, paged drafts ordered by most recently updated.

        Returns:
            Tuple of (total matching, page of drafts)
        """
        rows = self._table.select(
            lambda d: d.in_scope(scope)
            and (category_id is None or d.category_id == category_id)
            and matches_keyword(d, keyword)
        )
        rows.sort(key=lambda d: (d.updated_time, d.id), reverse=True)
        return paginate(rows, offset, limit)

    def count_by_category(self, scope: Scope, category_id: str) -> int:
        return len(self._table.select(lambda d: d.in_scope(scope) and d.category_id == category_id))

    def reassign_category(self, scope: Scope, from_category_id: str, to_category_id: str, updated_by: str) -> int:
        """Move every draft in one category to another without bumping versions."""
        with self._table.transaction():
            rows = self._table.select(lambda d: d.in_scope(scope) and d.category_id == from_category_id)
            now = utc_now_iso()
            for row in rows:
                row.category_id = to_category_id
                row.updated_time = now
                row.updated_by = updated_by
            if rows:
                self._table.put_many(rows)
        return len(rows)


class PublishedTemplateRepository:
    """
    Repository for published template versions.

    Insert-only for content: (scope, template_key, version) is unique and
    bpmn_xml/form_config never change after insert.
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self._table: JsonTable[PublishedTemplate] = JsonTable("published", PublishedTemplate, data_dir)

    def get(self, scope: Scope, published_id: str) -> Optional[PublishedTemplate]:
        row = self._table.get(published_id)
        if row is None or not row.in_scope(scope):
            logger.debug(f"Published template not found: {published_id}")
            return None
        return row

    def require(self, scope: Scope, published_id: str) -> PublishedTemplate:
        row = self.get(scope, published_id)
        if row is None:
            raise NotFoundError("Published template", published_id)
        return row

    def find_by_key(self, scope: Scope, template_key: str) -> List[PublishedTemplate]:
        """All versions for a key, oldest first."""
        rows = self._table.select(lambda p: p.in_scope(scope) and p.template_key == template_key)
        rows.sort(key=lambda p: p.version)
        return rows

    def latest_for_key(self, scope: Scope, template_key: str) -> Optional[PublishedTemplate]:
        rows = self.find_by_key(scope, template_key)
        return rows[-1] if rows else None

    def max_version(self, scope: Scope, template_key: str) -> int:
        latest = self.latest_for_key(scope, template_key)
        return latest.version if latest else 0

    def find_by_source_draft(
        self, scope: Scope, draft_id: str, draft_version: int
    ) -> Optional[PublishedTemplate]:
        rows = self._table.select(
            lambda p: p.in_scope(scope)
            and p.source_draft_id == draft_id
            and p.source_draft_version == draft_version
        )
        return rows[0] if rows else None

    def insert(self, row: PublishedTemplate) -> PublishedTemplate:
        """
        Store a new published version.

        Raises:
            ConflictError: If the (template_key, version) pair already exists in scope
        """
        with self._table.transaction():
            clash = self._table.select(
                lambda p: p.in_scope(row.scope)
                and p.template_key == row.template_key
                and p.version == row.version
            )
            if clash:
                raise ConflictError(
                    f"Version {row.version} of '{row.template_key}' is already published",
                    {"template_key": row.template_key, "version": row.version},
                )
            self._table.put(row)

        logger.info(f"Inserted published template {row.id} ({row.template_key} v{row.version})")
        return row

    def update_status(
        self,
        scope: Scope,
        published_id: str,
        status: TemplateStatus,
        suspended_time: Optional[str],
    ) -> PublishedTemplate:
        with self._table.transaction():
            row = self.require(scope, published_id)
            row.status = status
            row.suspended_time = suspended_time
            self._table.put(row)
        logger.info(f"Published template {published_id} status -> {status.value}")
        return row

    def update_counts(
        self,
        scope: Scope,
        published_id: str,
        instance_count: int,
        running_instance_count: int,
    ) -> PublishedTemplate:
        with self._table.transaction():
            row = self.require(scope, published_id)
            row.instance_count = instance_count
            row.running_instance_count = running_instance_count
            self._table.put(row)
        return row

    def list_in_scope(self, scope: Scope) -> List[PublishedTemplate]:
        return self._table.select(lambda p: p.in_scope(scope))

    def list_page(
        self,
        scope: Scope,
        status: Optional[TemplateStatus] = None,
        category_id: Optional[str] = None,
        keyword: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[int, List[PublishedTemplate]]:
        """
        Filtered, paged published versions, newest publish first.

        Returns:
            Tuple of (total matching, page of published templates)
        """
        rows = self._table.select(
            lambda p: p.in_scope(scope)
            and (status is None or p.status == status)
            and (category_id is None or p.category_id == category_id)
            and matches_keyword(p, keyword)
        )
        rows.sort(key=lambda p: (p.published_time, p.version), reverse=True)
        return paginate(rows, offset, limit)

    def count_by_category(self, scope: Scope, category_id: str) -> int:
        return len(self._table.select(lambda p: p.in_scope(scope) and p.category_id == category_id))

    def reassign_category(self, scope: Scope, from_category_id: str, to_category_id: str) -> int:
        with self._table.transaction():
            rows = self._table.select(lambda p: p.in_scope(scope) and p.category_id == from_category_id)
            for row in rows:
                row.category_id = to_category_id
            if rows:
                self._table.put_many(rows)
        return len(rows)

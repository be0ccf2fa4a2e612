"""
Template lifecycle management.

The LifecycleCoordinator owns every state change of a template:
- Draft authoring: create, save (optimistic versioning), delete
- publish: draft -> new ACTIVE published version, deployed to the engine
- suspend / activate: ACTIVE <-> INACTIVE on one published version
- snapshot / restore: immutable captures and drafts rebuilt from them
- Category reassignment so categories can be deleted

Lifecycle states:
- DRAFT: mutable working copy, never deployed
- ACTIVE: deployed and startable
- INACTIVE: deployed but suspended in the engine

Valid transitions:
- draft -> active (publish, creates version n+1)
- active -> inactive (suspend)
- inactive -> active (activate)

All writes for one (scope, template_key) are serialized by a keyed lock.
Engine calls are bounded by a timeout and never leave partial state: local
rows are written only after the engine call succeeds.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple, Union

from src.categories.tree import CategoryTreeStore
from src.engine.client import ExecutionEngine, GuardedExecutionEngine
from src.notifications.dispatcher import (
    LifecycleEvent,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEventType,
)
from src.templates.audit import LifecycleAuditEvent, get_audit_logger, log_lifecycle_event
from src.templates.errors import (
    ConflictError,
    InvalidStateError,
    TemplateError,
    ValidationError,
)
from src.templates.locking import KeyedLock
from src.templates.schemas import (
    ALLOWED_TRANSITIONS,
    CreateDraftRequest,
    DraftTemplate,
    DuplicateDraftPolicy,
    Page,
    PublishedTemplate,
    RestorePolicy,
    Scope,
    SourceTemplateType,
    TemplateEntity,
    TemplateQuery,
    TemplateSnapshot,
    TemplateStatus,
    TemplateView,
    UnchangedPublishPolicy,
    UpdateDraftRequest,
    utc_now_iso,
)
from src.templates.snapshots import SnapshotStore
from src.templates.storage import DraftTemplateRepository, PublishedTemplateRepository
from src.templates.validation import MAX_BPMN_SIZE_BYTES, ensure_valid_bpmn
from src.templates.versioning import (
    check_expected_version,
    content_checksum,
    format_version_change,
    next_version,
    restored_template_key,
)
from src.templates.views import clamp_limit, list_templates


# Configure logging for lifecycle module
logger = logging.getLogger(__name__)


@dataclass
class LifecyclePolicies:
    """Behaviour switches for the ambiguous lifecycle cases."""
    duplicate_draft: DuplicateDraftPolicy = DuplicateDraftPolicy.REJECT
    restore: RestorePolicy = RestorePolicy.OVERWRITE
    unchanged_publish: UnchangedPublishPolicy = UnchangedPublishPolicy.ALLOW
    block_suspend_with_running_instances: bool = True


def validate_status_transition(
    current_status: TemplateStatus,
    target_status: TemplateStatus,
) -> Tuple[bool, Optional[str]]:
    """
    Validate if a status transition is allowed.

    Args:
        current_status: Current template status
        target_status: Desired target status

    Returns:
        Tuple of (is_valid, error_message)
        - (True, None) if transition is allowed
        - (False, error_message) if transition is not allowed
    """
    if current_status == target_status:
        return False, f"Template is already {current_status.value}"

    allowed = ALLOWED_TRANSITIONS.get(current_status, set())
    if target_status not in allowed:
        allowed_list = sorted(s.value for s in allowed) if allowed else ["none"]
        return False, (
            f"Invalid transition: {current_status.value} -> {target_status.value}. "
            f"Allowed transitions from {current_status.value}: {allowed_list}"
        )

    return True, None


def _require_transition(current_status: TemplateStatus, target_status: TemplateStatus) -> None:
    is_valid, error = validate_status_transition(current_status, target_status)
    if not is_valid:
        raise InvalidStateError(error, current_status.value, target_status.value)


class LifecycleCoordinator:
    """
    Entry point for every template operation.

    Usage:
        coordinator = LifecycleCoordinator(drafts, published, snapshots, categories, engine)
        draft = coordinator.create_draft(scope, request, "alice")
        version = coordinator.publish(scope, draft.id, "alice")
    """

    def __init__(
        self,
        drafts: DraftTemplateRepository,
        published: PublishedTemplateRepository,
        snapshots: SnapshotStore,
        categories: CategoryTreeStore,
        engine: Union[ExecutionEngine, GuardedExecutionEngine],
        dispatcher: Optional[NotificationDispatcher] = None,
        policies: Optional[LifecyclePolicies] = None,
        engine_timeout_seconds: float = 10.0,
        max_bpmn_size: int = MAX_BPMN_SIZE_BYTES,
        max_page_limit: int = 100,
    ):
        self.drafts = drafts
        self.published = published
        self.snapshots = snapshots
        self.categories = categories
        if isinstance(engine, GuardedExecutionEngine):
            self.engine = engine
        else:
            self.engine = GuardedExecutionEngine(engine, engine_timeout_seconds)
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.policies = policies or LifecyclePolicies()
        self.max_bpmn_size = max_bpmn_size
        self.max_page_limit = max_page_limit
        self._locks = KeyedLock()
        self._audit = get_audit_logger("lifecycle")

        categories.set_template_counter(self.count_templates_in_category)

    # ============ Helpers ============

    def _key_lock(self, scope: Scope, template_key: str):
        return self._locks.hold((*scope.key(), template_key))

    @contextmanager
    def _referenced_draft(
        self, scope: Scope, draft_id: str, category_id: Optional[str] = None
    ) -> Iterator[DraftTemplate]:
        """
        Yield the current draft row while its category, and category_id when
        given, cannot be deleted or reassigned. Call with the key lock held.
        """
        while True:
            seen = self.drafts.require(scope, draft_id)
            with self.categories.referencing(scope, seen.category_id, category_id or seen.category_id):
                current = self.drafts.require(scope, draft_id)
                # Reassigned between the two reads; hold the new category instead.
                if current.category_id != seen.category_id:
                    continue
                yield current
                return

    @contextmanager
    def _audited(self, action: str, scope: Scope, user_id: str, **fields) -> Iterator[Dict]:
        """Record the wrapped action as a SUCCESS or FAILED audit event."""
        record: Dict = dict(fields)
        started = time.monotonic()
        try:
            yield record
        except TemplateError as e:
            self._log_audit(action, scope, user_id, record, started, "FAILED", e.message)
            raise
        except Exception as e:
            self._log_audit(action, scope, user_id, record, started, "FAILED", f"{type(e).__name__}: {e}")
            raise
        self._log_audit(action, scope, user_id, record, started, "SUCCESS", None)

    def _log_audit(
        self,
        action: str,
        scope: Scope,
        user_id: str,
        record: Dict,
        started: float,
        result: str,
        reason: Optional[str],
    ) -> None:
        log_lifecycle_event(self._audit, LifecycleAuditEvent(
            action=action,
            user_id=user_id,
            result=result,
            reason=reason,
            duration_ms=int((time.monotonic() - started) * 1000),
            template_key=record.get("template_key"),
            entity_id=record.get("entity_id"),
            version=record.get("version"),
            **scope.model_dump(),
        ))

    def _notify(
        self,
        event_type: NotificationEventType,
        scope: Scope,
        template_key: str,
        user_id: str,
        row: Optional[PublishedTemplate] = None,
        template_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        event = LifecycleEvent(
            event_type=event_type,
            template_key=template_key,
            template_name=row.template_name if row else template_name,
            published_id=row.id if row else None,
            version=row.version if row else None,
            process_definition_id=row.process_definition_id if row else None,
            user_id=user_id,
            reason=reason,
            **scope.model_dump(),
        )
        try:
            self.dispatcher.dispatch(event)
        except Exception as e:
            logger.warning(f"Notification {event_type.value} for {template_key} failed: {e}")

    def _check_category(self, scope: Scope, category_id: Optional[str]) -> None:
        if category_id is None:
            raise ValidationError("category_id is required", ["category_id is required"])
        if self.categories.get(scope, category_id) is None:
            raise ValidationError(
                f"Category not found: {category_id}",
                [f"category_id '{category_id}' does not resolve"],
            )

    def count_templates_in_category(self, scope: Scope, category_id: str) -> int:
        """Distinct template keys with a draft or published version filed under the category."""
        keys = {d.template_key for d in self.drafts.list_in_scope(scope) if d.category_id == category_id}
        keys.update(p.template_key for p in self.published.list_in_scope(scope) if p.category_id == category_id)
        return len(keys)

    def get_template(self, scope: Scope, kind: str, entity_id: str) -> TemplateEntity:
        """Fetch a draft, published version or snapshot by its kind tag."""
        if kind == "DRAFT":
            return self.drafts.require(scope, entity_id)
        if kind == "PUBLISHED":
            return self.published.require(scope, entity_id)
        if kind == "SNAPSHOT":
            return self.snapshots.require(scope, entity_id)
        raise ValidationError(f"Unknown template kind: {kind}", ["kind must be DRAFT, PUBLISHED or SNAPSHOT"])

    # ============ Drafts ============

    def create_draft(self, scope: Scope, request: CreateDraftRequest, user_id: str = "system") -> DraftTemplate:
        """
        Create the draft for a template_key.

        A new draft continues the key's draft version sequence (version 1 for
        a brand-new key). When a live draft already exists the duplicate
        draft policy decides between ConflictError and overwriting it.

        Raises:
            ValidationError: If the category does not resolve or the BPMN is invalid
            ConflictError: If a draft exists and the policy is REJECT
        """
        with self._audited("create_draft", scope, user_id, template_key=request.template_key) as record:
            ensure_valid_bpmn(request.bpmn_xml, self.max_bpmn_size)

            with self._key_lock(scope, request.template_key), \
                    self.categories.referencing(scope, request.category_id):
                self._check_category(scope, request.category_id)
                existing = self.drafts.find_by_key(scope, request.template_key)
                if existing is not None:
                    if self.policies.duplicate_draft == DuplicateDraftPolicy.REJECT:
                        raise ConflictError(
                            f"A draft already exists for template_key '{request.template_key}'",
                            {"template_key": request.template_key, "draft_id": existing.id},
                        )
                    draft = self.drafts.update(
                        existing.model_copy(update={
                            **request.model_dump(exclude={"template_key"}),
                            "updated_time": utc_now_iso(),
                            "updated_by": user_id,
                        }),
                        expected_version=None,
                    )
                else:
                    draft = self.drafts.insert(DraftTemplate(
                        id=str(uuid.uuid4()),
                        version=self.drafts.last_version(scope, request.template_key) + 1,
                        created_by=user_id,
                        updated_by=user_id,
                        **request.model_dump(),
                        **scope.model_dump(),
                    ))

            record.update(entity_id=draft.id, version=draft.version)

        logger.info(f"Draft saved: {format_version_change(draft.template_key, existing.version if existing else None, draft.version)}")
        return draft

    def save_draft(
        self,
        scope: Scope,
        draft_id: str,
        request: UpdateDraftRequest,
        expected_version: Optional[int] = None,
        user_id: str = "system",
    ) -> DraftTemplate:
        """
        Save changes to a draft.

        Args:
            scope: Caller scope
            draft_id: Draft to update
            request: New content; omitted optional fields keep their values
            expected_version: Version the caller last read (None skips the check)
            user_id: Acting user

        Returns:
            The saved draft with version + 1

        Raises:
            NotFoundError: If the draft does not exist
            ConcurrencyError: If expected_version is stale
            ValidationError: If the category does not resolve or the BPMN is invalid
        """
        template_key = self.drafts.require(scope, draft_id).template_key
        with self._audited("save_draft", scope, user_id, template_key=template_key, entity_id=draft_id) as record:
            changes = request.model_dump(exclude_unset=True)
            for field in ("category_id", "tags", "form_config"):
                if changes.get(field) is None:
                    changes.pop(field, None)
            ensure_valid_bpmn(request.bpmn_xml, self.max_bpmn_size)

            with self._key_lock(scope, template_key), \
                    self._referenced_draft(scope, draft_id, changes.get("category_id")) as current:
                check_expected_version(draft_id, expected_version, current.version)
                self._check_category(scope, changes.get("category_id", current.category_id))

                draft = self.drafts.update(
                    current.model_copy(update={
                        **changes,
                        "updated_time": utc_now_iso(),
                        "updated_by": user_id,
                    }),
                    expected_version=current.version,
                )
            record["version"] = draft.version

        logger.info(f"Draft saved: {format_version_change(template_key, current.version, draft.version)}")
        return draft

    def get_draft(self, scope: Scope, draft_id: str) -> DraftTemplate:
        return self.drafts.require(scope, draft_id)

    def delete_draft(self, scope: Scope, draft_id: str, user_id: str = "system") -> None:
        """Delete a draft. Published versions and snapshots of the key are kept."""
        draft = self.drafts.require(scope, draft_id)
        with self._audited("delete_draft", scope, user_id, template_key=draft.template_key, entity_id=draft_id):
            with self._key_lock(scope, draft.template_key):
                self.drafts.require(scope, draft_id)
                self.drafts.delete(scope, draft_id)

    def list_drafts(self, scope: Scope, query: TemplateQuery) -> Page[DraftTemplate]:
        limit = clamp_limit(query.limit, max_limit=self.max_page_limit)
        total, items = self.drafts.list_page(
            scope,
            category_id=query.category_id,
            keyword=query.keyword,
            offset=query.offset,
            limit=limit,
        )
        return Page[DraftTemplate](total=total, offset=query.offset, limit=limit, items=items)

    # ============ Publish / suspend / activate ============

    def publish(
        self,
        scope: Scope,
        draft_id: str,
        user_id: str = "system",
        expected_version: Optional[int] = None,
    ) -> PublishedTemplate:
        """
        Publish a draft as the next version of its template_key.

        Retrying a publish of the same draft version returns the version
        created the first time without deploying again. The draft is kept.

        Raises:
            NotFoundError: If the draft does not exist
            ConcurrencyError: If expected_version is stale
            ValidationError: If the BPMN or category is invalid
            ConflictError: If content is unchanged and the policy is REJECT
            DeploymentError / EngineTimeoutError: If deployment fails (nothing is stored)
        """
        template_key = self.drafts.require(scope, draft_id).template_key
        with self._audited("publish", scope, user_id, template_key=template_key, entity_id=draft_id) as record:
            with self._key_lock(scope, template_key), self._referenced_draft(scope, draft_id) as draft:
                check_expected_version(draft_id, expected_version, draft.version)

                already = self.published.find_by_source_draft(scope, draft.id, draft.version)
                if already is not None:
                    logger.info(f"Publish retry for draft {draft_id} v{draft.version}: returning {already.id}")
                    record.update(entity_id=already.id, version=already.version)
                    return already

                versions = self.published.find_by_key(scope, template_key)
                checksum = content_checksum(draft.bpmn_xml, draft.form_config)
                version = next_version(p.version for p in versions)
                try:
                    self._check_category(scope, draft.category_id)
                    ensure_valid_bpmn(draft.bpmn_xml, self.max_bpmn_size)
                    if (
                        self.policies.unchanged_publish == UnchangedPublishPolicy.REJECT
                        and versions
                        and versions[-1].content_checksum == checksum
                    ):
                        raise ConflictError(
                            f"Content of '{template_key}' is unchanged since v{versions[-1].version}",
                            {"template_key": template_key, "version": versions[-1].version},
                        )
                    deployment = self.engine.deploy(
                        draft.template_name,
                        f"{template_key}.bpmn20.xml",
                        draft.bpmn_xml,
                        scope.tenant_id,
                    )
                except TemplateError as e:
                    self._notify(
                        NotificationEventType.REJECTED, scope, template_key, user_id,
                        template_name=draft.template_name, reason=e.message,
                    )
                    raise

                row = self.published.insert(PublishedTemplate(
                    id=str(uuid.uuid4()),
                    version=version,
                    status=TemplateStatus.ACTIVE,
                    process_definition_id=deployment.process_definition_id,
                    deployment_id=deployment.deployment_id,
                    source_draft_id=draft.id,
                    source_draft_version=draft.version,
                    content_checksum=checksum,
                    created_by=user_id,
                    **draft.model_dump(include={
                        "template_key", "template_name", "description", "bpmn_xml",
                        "category_id", "tags", "form_config",
                        "tenant_id", "app_id", "context_id",
                    }),
                ))
            record.update(entity_id=row.id, version=row.version)

        logger.info(
            f"Published {format_version_change(template_key, versions[-1].version if versions else None, row.version)} "
            f"as {row.process_definition_id}"
        )
        self._notify(NotificationEventType.PUBLISHED, scope, template_key, user_id, row)
        return row

    def suspend(self, scope: Scope, published_id: str, user_id: str = "system") -> PublishedTemplate:
        """
        Suspend one ACTIVE published version.

        Raises:
            NotFoundError: If the version does not exist
            InvalidStateError: If it is not ACTIVE, or has running instances
                while block_suspend_with_running_instances is set
            EngineError / EngineTimeoutError: If the engine call fails (status unchanged)
        """
        template_key = self.published.require(scope, published_id).template_key
        with self._audited("suspend", scope, user_id, template_key=template_key, entity_id=published_id) as record:
            with self._key_lock(scope, template_key):
                row = self.published.require(scope, published_id)
                _require_transition(row.status, TemplateStatus.INACTIVE)
                if self.policies.block_suspend_with_running_instances and row.running_instance_count > 0:
                    raise InvalidStateError(
                        f"Published template {published_id} has {row.running_instance_count} running instances",
                        row.status.value,
                        TemplateStatus.INACTIVE.value,
                    )
                self.engine.suspend(row.process_definition_id)
                row = self.published.update_status(scope, published_id, TemplateStatus.INACTIVE, utc_now_iso())
            record["version"] = row.version

        self._notify(NotificationEventType.SUSPENDED, scope, template_key, user_id, row)
        return row

    def activate(self, scope: Scope, published_id: str, user_id: str = "system") -> PublishedTemplate:
        """
        Re-activate one INACTIVE published version.

        Raises:
            NotFoundError: If the version does not exist
            InvalidStateError: If it is not INACTIVE
            EngineError / EngineTimeoutError: If the engine call fails (status unchanged)
        """
        template_key = self.published.require(scope, published_id).template_key
        with self._audited("activate", scope, user_id, template_key=template_key, entity_id=published_id) as record:
            with self._key_lock(scope, template_key):
                row = self.published.require(scope, published_id)
                _require_transition(row.status, TemplateStatus.ACTIVE)
                self.engine.activate(row.process_definition_id)
                row = self.published.update_status(scope, published_id, TemplateStatus.ACTIVE, None)
            record["version"] = row.version

        self._notify(NotificationEventType.ACTIVATED, scope, template_key, user_id, row)
        return row

    def refresh_instance_counts(self, scope: Scope, published_id: str) -> PublishedTemplate:
        """Pull instance counters from the engine and store them on the version."""
        row = self.published.require(scope, published_id)
        counts = self.engine.get_instance_counts(row.process_definition_id)
        logger.debug(
            f"Instance counts for {published_id}: {counts.instance_count} total, "
            f"{counts.running_instance_count} running"
        )
        return self.published.update_counts(
            scope, published_id, counts.instance_count, counts.running_instance_count
        )

    def get_published(self, scope: Scope, published_id: str) -> PublishedTemplate:
        return self.published.require(scope, published_id)

    def list_versions(self, scope: Scope, template_key: str) -> List[PublishedTemplate]:
        return self.published.find_by_key(scope, template_key)

    def list_published(self, scope: Scope, query: TemplateQuery) -> Page[PublishedTemplate]:
        limit = clamp_limit(query.limit, max_limit=self.max_page_limit)
        total, items = self.published.list_page(
            scope,
            status=query.status,
            category_id=query.category_id,
            keyword=query.keyword,
            offset=query.offset,
            limit=limit,
        )
        return Page[PublishedTemplate](total=total, offset=query.offset, limit=limit, items=items)

    # ============ Snapshots ============

    def snapshot(
        self,
        scope: Scope,
        source_template_id: str,
        source_template_type: Union[SourceTemplateType, str],
        snapshot_name: str,
        user_id: str = "system",
    ) -> TemplateSnapshot:
        """
        Capture an immutable copy of a draft or published version.

        Raises:
            ValidationError: If the name is blank or the source type is unknown
            NotFoundError: If the source does not exist
        """
        if not snapshot_name or not snapshot_name.strip():
            raise ValidationError("Snapshot name is required", ["snapshot_name must not be blank"])
        try:
            source_type = SourceTemplateType(source_template_type)
        except ValueError:
            raise ValidationError(
                f"Unknown source template type: {source_template_type}",
                ["source_template_type must be DRAFT or PUBLISHED"],
            ) from None

        source = self.get_template(scope, source_type.value, source_template_id)
        with self._audited("snapshot", scope, user_id, template_key=source.template_key) as record:
            with self._key_lock(scope, source.template_key):
                source = self.get_template(scope, source_type.value, source_template_id)
                snapshot = self.snapshots.append(TemplateSnapshot(
                    id=str(uuid.uuid4()),
                    snapshot_name=snapshot_name.strip(),
                    snapshot_version=1,
                    source_template_id=source.id,
                    source_template_type=source_type,
                    source_template_status=source.status,
                    source_template_version=source.version,
                    created_by=user_id,
                    **source.model_dump(include={
                        "template_key", "template_name", "description", "bpmn_xml",
                        "category_id", "tags", "form_config",
                        "tenant_id", "app_id", "context_id",
                    }),
                ))
            record.update(entity_id=snapshot.id, version=snapshot.snapshot_version)
        return snapshot

    def get_snapshot(self, scope: Scope, snapshot_id: str) -> TemplateSnapshot:
        return self.snapshots.require(scope, snapshot_id)

    def list_snapshots(self, scope: Scope, template_key: str) -> List[TemplateSnapshot]:
        return self.snapshots.list_for_key(scope, template_key)

    def delete_snapshot(self, scope: Scope, snapshot_id: str, user_id: str = "system") -> None:
        snapshot = self.snapshots.require(scope, snapshot_id)
        with self._audited("delete_snapshot", scope, user_id, template_key=snapshot.template_key, entity_id=snapshot_id):
            self.snapshots.delete(scope, snapshot_id)

    def restore(
        self,
        scope: Scope,
        snapshot_id: str,
        new_template_name: Optional[str] = None,
        user_id: str = "system",
    ) -> DraftTemplate:
        """
        Rebuild a draft from a snapshot according to the restore policy.

        The draft is named ``new_template_name`` when given, otherwise after
        the snapshot.

        - OVERWRITE: replace the key's live draft (version + 1) or create one
        - CREATE: create the key's draft; ConflictError if one exists
        - NEW_KEY: create a draft under '<key>_restore_<millis>' at version 1

        Published versions are never touched.

        Raises:
            NotFoundError: If the snapshot does not exist
            ValidationError: If the snapshot's category no longer exists
            ConflictError: Under CREATE when a draft already exists
        """
        snapshot = self.snapshots.require(scope, snapshot_id)
        policy = self.policies.restore
        template_key = snapshot.template_key
        if policy == RestorePolicy.NEW_KEY:
            template_key = restored_template_key(snapshot.template_key)

        with self._audited("restore", scope, user_id, template_key=template_key) as record:
            content = snapshot.model_dump(include={
                "template_name", "description", "bpmn_xml", "category_id", "tags", "form_config",
            })
            if new_template_name and new_template_name.strip():
                content["template_name"] = new_template_name.strip()
            else:
                content["template_name"] = snapshot.snapshot_name

            with self._key_lock(scope, template_key), \
                    self.categories.referencing(scope, snapshot.category_id):
                if snapshot.category_id is not None:
                    self._check_category(scope, snapshot.category_id)
                existing = self.drafts.find_by_key(scope, template_key)
                if existing is not None and policy == RestorePolicy.OVERWRITE:
                    draft = self.drafts.update(
                        existing.model_copy(update={
                            **content,
                            "updated_time": utc_now_iso(),
                            "updated_by": user_id,
                        }),
                        expected_version=None,
                    )
                elif existing is not None:
                    raise ConflictError(
                        f"A draft already exists for template_key '{template_key}'",
                        {"template_key": template_key, "draft_id": existing.id},
                    )
                else:
                    draft = self.drafts.insert(DraftTemplate(
                        id=str(uuid.uuid4()),
                        template_key=template_key,
                        version=self.drafts.last_version(scope, template_key) + 1,
                        created_by=user_id,
                        updated_by=user_id,
                        **content,
                        **scope.model_dump(),
                    ))
            record.update(entity_id=draft.id, version=draft.version)

        logger.info(
            f"Restored snapshot {snapshot_id} ({snapshot.template_key} #{snapshot.snapshot_version}) "
            f"into draft {draft.id} ({template_key} v{draft.version})"
        )
        return draft

    # ============ Categories and listing ============

    def reassign_category(
        self,
        scope: Scope,
        from_category_id: str,
        to_category_id: str,
        user_id: str = "system",
    ) -> int:
        """
        Move every draft and published version filed under one category to another.

        Both categories are held exclusively, so template writes that
        reference either one finish first and none start until the move is done.

        Returns:
            Number of rows moved
        """
        with self.categories.exclusive(scope, from_category_id, to_category_id):
            self.categories.require(scope, from_category_id)
            self.categories.require(scope, to_category_id)
            with self._audited("reassign_category", scope, user_id, entity_id=from_category_id) as record:
                moved = self.drafts.reassign_category(scope, from_category_id, to_category_id, user_id)
                moved += self.published.reassign_category(scope, from_category_id, to_category_id)
                record["version"] = moved
        logger.info(f"Reassigned {moved} template rows from category {from_category_id} to {to_category_id}")
        return moved

    def list_templates(self, scope: Scope, query: TemplateQuery) -> Page[TemplateView]:
        category_names = {c.id: c.name for c in self.categories.list_in_scope(scope)}
        return list_templates(
            scope,
            query,
            self.drafts,
            self.published,
            category_names,
            max_limit=self.max_page_limit,
        )

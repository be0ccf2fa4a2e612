"""
Typed errors for the process template lifecycle.

Every public operation either returns the resulting entity or raises one of
these. The API layer maps each class onto an HTTP status (see api.py).

Hierarchy:
- TemplateError
  - NotFoundError
  - ValidationError
  - ConflictError
    - CategoryCycleError
  - ConcurrencyError
  - InvalidStateError
  - HasChildrenError
  - HasTemplatesError
  - EngineError
    - DeploymentError
  - EngineTimeoutError
"""

from typing import Any, Dict, List, Optional


class TemplateError(Exception):
    """Base class for all lifecycle errors."""

    code = "TEMPLATE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(TemplateError):
    """Entity id does not resolve in the caller's scope."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Optional[str]):
        super().__init__(
            f"{entity} not found: {entity_id}",
            {"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(TemplateError):
    """Malformed content or a missing required field."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        super().__init__(message, {"errors": self.errors})


class ConflictError(TemplateError):
    """Uniqueness violation or duplicate draft."""

    code = "CONFLICT"


class CategoryCycleError(ConflictError):
    """A category move would place a node under itself."""

    code = "CATEGORY_CYCLE"


class ConcurrencyError(TemplateError):
    """Optimistic version check failed."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Version mismatch for {entity_id}: expected {expected_version}, "
            f"found {actual_version}",
            {
                "id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidStateError(TemplateError):
    """Transition is not legal from the current state."""

    code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ):
        super().__init__(message, {"current": current, "target": target})
        self.current = current
        self.target = target


class HasChildrenError(TemplateError):
    """Category deletion blocked by child categories."""

    code = "CATEGORY_HAS_CHILDREN"

    def __init__(self, category_id: str, child_count: int):
        super().__init__(
            f"Category {category_id} still has {child_count} child categories; "
            "move or delete them first",
            {"id": category_id, "child_count": child_count},
        )
        self.child_count = child_count


class HasTemplatesError(TemplateError):
    """Category deletion blocked by templates that reference it."""

    code = "CATEGORY_HAS_TEMPLATES"

    def __init__(self, category_id: str, template_count: int):
        super().__init__(
            f"Category {category_id} is still referenced by {template_count} "
            "templates; reassign them first",
            {"id": category_id, "template_count": template_count},
        )
        self.template_count = template_count


class EngineError(TemplateError):
    """The execution engine rejected or failed a call."""

    code = "ENGINE_ERROR"


class DeploymentError(EngineError):
    """The execution engine could not deploy a process definition."""

    code = "DEPLOYMENT_FAILED"


class EngineTimeoutError(TemplateError):
    """A bounded execution engine call did not finish in time."""

    code = "ENGINE_TIMEOUT"

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Execution engine call '{operation}' timed out after {timeout_seconds}s",
            {"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds

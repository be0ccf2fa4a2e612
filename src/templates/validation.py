"""
BPMN content validation for process templates.

Provides:
- Size checks against the configured maximum
- XML well-formedness checks (DOCTYPE declarations are refused)
- Structural checks against the BPMN 2.0 model namespace
- Warnings for incomplete but deployable definitions

Errors (block save/publish):
- empty or oversize content
- malformed XML
- root element is not bpmn:definitions
- no process element, or a process without an id
- a process without a startEvent

Warnings (logged, never block):
- process without a name
- userTask with no assignee, candidate users/groups or potentialOwner
"""

import logging
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple, Union

from src.templates.errors import ValidationError


logger = logging.getLogger(__name__)


BPMN_MODEL_NS = "http://www.omg.org/spec/BPMN/20100524/MODEL"

# 5 MiB is far above any hand-drawn diagram
MAX_BPMN_SIZE_BYTES = 5 * 1024 * 1024

ASSIGNMENT_ATTRIBUTES = {"assignee", "candidateUsers", "candidateGroups"}


def _q(tag: str) -> str:
    return f"{{{BPMN_MODEL_NS}}}{tag}"


def _local_name(name: str) -> str:
    return name.rsplit("}", 1)[-1]


class BpmnValidationResult:
    """Result of BPMN validation."""

    def __init__(
        self,
        is_valid: bool,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        process_id: Optional[str] = None,
        process_name: Optional[str] = None,
    ):
        self.is_valid = is_valid
        self.errors = errors or []
        self.warnings = warnings or []
        self.process_id = process_id
        self.process_name = process_name

    def __repr__(self) -> str:
        if self.is_valid:
            return (
                f"BpmnValidationResult(valid=True, process_id={self.process_id}, "
                f"warnings={len(self.warnings)})"
            )
        return f"BpmnValidationResult(valid=False, errors={self.errors})"


def validate_bpmn_size(
    content: Union[str, bytes],
    max_size: int = MAX_BPMN_SIZE_BYTES,
) -> Tuple[bool, Optional[str]]:
    """
    Validate that content does not exceed maximum size.

    Args:
        content: String or bytes content to check
        max_size: Limit in bytes

    Returns:
        Tuple of (is_valid, error_message)
    """
    size = len(content.encode("utf-8")) if isinstance(content, str) else len(content)
    if size > max_size:
        return (False, f"BPMN XML too large: {size:,} bytes (max: {max_size:,} bytes)")
    return (True, None)


def parse_bpmn_xml(content: str) -> Tuple[Optional[ET.Element], Optional[str]]:
    """
    Parse XML and return the root element.

    Returns:
        Tuple of (root, error_message); root is None when parsing failed
    """
    if "<!DOCTYPE" in content or "<!ENTITY" in content:
        return (None, "BPMN XML must not contain DOCTYPE or ENTITY declarations")
    try:
        return (ET.fromstring(content), None)
    except ET.ParseError as e:
        line, column = e.position
        return (None, f"Malformed XML at line {line}, column {column}: {e}")


def _has_assignment(task: ET.Element) -> bool:
    for attr, value in task.attrib.items():
        if _local_name(attr) in ASSIGNMENT_ATTRIBUTES and value.strip():
            return True
    return task.find(_q("potentialOwner")) is not None or task.find(_q("humanPerformer")) is not None


def _check_process(process: ET.Element, errors: List[str], warnings: List[str]) -> None:
    process_id = process.get("id", "").strip()
    label = process_id or "<unnamed>"

    if not process_id:
        errors.append("Process is missing an id")
    if not process.get("name", "").strip():
        warnings.append(f"Process '{label}' has no name")
    if process.find(_q("startEvent")) is None:
        errors.append(f"Process '{label}' has no startEvent")

    for task in process.iter(_q("userTask")):
        if not _has_assignment(task):
            warnings.append(
                f"User task '{task.get('name') or task.get('id')}' has no assignee "
                "or candidate users/groups"
            )


def validate_bpmn_xml(
    content: Optional[str],
    max_size: int = MAX_BPMN_SIZE_BYTES,
) -> BpmnValidationResult:
    """
    Complete validation pipeline for BPMN content.

    Validates:
    1. Content present
    2. Size within limits
    3. XML well-formedness
    4. BPMN structure of every process

    Args:
        content: Raw BPMN XML
        max_size: Size limit in bytes

    Returns:
        BpmnValidationResult with errors, warnings and the main process id/name
    """
    if content is None or not content.strip():
        return BpmnValidationResult(is_valid=False, errors=["BPMN XML must not be empty"])

    size_valid, size_error = validate_bpmn_size(content, max_size)
    if not size_valid:
        return BpmnValidationResult(is_valid=False, errors=[size_error])

    root, parse_error = parse_bpmn_xml(content)
    if root is None:
        return BpmnValidationResult(is_valid=False, errors=[parse_error])

    if root.tag != _q("definitions"):
        return BpmnValidationResult(
            is_valid=False,
            errors=[f"Root element must be bpmn:definitions in namespace {BPMN_MODEL_NS}, got '{root.tag}'"],
        )

    processes = root.findall(_q("process"))
    if not processes:
        return BpmnValidationResult(is_valid=False, errors=["No process definition found in BPMN XML"])

    errors: List[str] = []
    warnings: List[str] = []
    for process in processes:
        _check_process(process, errors, warnings)

    main = processes[0]
    return BpmnValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        process_id=main.get("id") or None,
        process_name=main.get("name") or None,
    )


def ensure_valid_bpmn(content: Optional[str], max_size: int = MAX_BPMN_SIZE_BYTES) -> BpmnValidationResult:
    """
    Validate BPMN content and raise when it is not deployable.

    Raises:
        ValidationError: With every structural error found
    """
    result = validate_bpmn_xml(content, max_size)
    if not result.is_valid:
        raise ValidationError("Invalid BPMN XML", result.errors)
    for warning in result.warnings:
        logger.warning(f"BPMN warning for process {result.process_id}: {warning}")
    return result

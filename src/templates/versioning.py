"""
Version sequencing and content fingerprinting for process templates.

Provides:
- Next-version computation for published and snapshot sequences
- Optimistic concurrency checks for draft saves
- Content checksums used to detect republishing unchanged content
- Key derivation for drafts restored under a fresh template_key
"""

import hashlib
import json
import time
from typing import Any, Dict, Iterable, Optional

from src.templates.errors import ConcurrencyError


def next_version(existing_versions: Iterable[int]) -> int:
    """
    Next number in a 1-based sequence.

    Args:
        existing_versions: Versions already assigned for one template_key

    Returns:
        max(existing_versions) + 1, or 1 when the sequence is empty

    Examples:
        >>> next_version([])
        1
        >>> next_version([1, 2, 3])
        4
    """
    return max(existing_versions, default=0) + 1


def check_expected_version(
    entity_id: str,
    expected_version: Optional[int],
    actual_version: int,
) -> None:
    """
    Enforce an optimistic version check.

    Args:
        entity_id: Id reported in the error
        expected_version: Version the caller last read, or None to skip the check
        actual_version: Version currently stored

    Raises:
        ConcurrencyError: If expected_version is given and differs from actual_version
    """
    if expected_version is not None and expected_version != actual_version:
        raise ConcurrencyError(entity_id, expected_version, actual_version)


def content_checksum(bpmn_xml: str, form_config: Optional[Dict[str, Any]] = None) -> str:
    """
    Fingerprint of the content a published version freezes.

    The form config is serialized with sorted keys so logically equal
    configs hash the same regardless of key order.

    Args:
        bpmn_xml: Process definition XML
        form_config: Form configuration object

    Returns:
        Hex sha256 digest
    """
    payload = json.dumps(
        {"bpmn_xml": bpmn_xml, "form_config": form_config or {}},
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def restored_template_key(template_key: str, now_millis: Optional[int] = None) -> str:
    """
    Fresh key for a draft restored alongside its original.

    Args:
        template_key: Key of the snapshot being restored
        now_millis: Epoch milliseconds (defaults to the current time)

    Returns:
        Key of the form "<template_key>_restore_<millis>"
    """
    if now_millis is None:
        now_millis = int(time.time() * 1000)
    return f"{template_key}_restore_{now_millis}"


def format_version_change(template_key: str, old_version: Optional[int], new_version: int) -> str:
    """
    Human-readable description of a version change, used in log lines.

    Returns:
        Description like "leave-request v1 -> v2" or "leave-request (new) -> v1"
    """
    old = f"v{old_version}" if old_version is not None else "(new)"
    return f"{template_key} {old} -> v{new_version}"

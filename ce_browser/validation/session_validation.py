from __future__ import annotations

from typing import Any

from ce_browser.core.fields import CLASSIFICATION_FIELDS, SET_FIELDS, UID
from ce_browser.validation.errors import ValidationIssue, ValidationError


def validate_session_record(obj: Any) -> None:
    """
    Validate a raw session record BEFORE building a CellStoreSnapshot.
    This prevents half-valid records from poisoning the loaded batch.
    """
    issues: list[ValidationIssue] = []

    if not isinstance(obj, dict):
        raise ValidationError([ValidationIssue("RECORD_TYPE", "Session record must be a JSON object.")])

    if not obj.get("ref"):
        issues.append(ValidationIssue("RECORD_REF", "ref missing."))

    batch_id = obj.get("batch_id")
    if isinstance(batch_id, bool) or not isinstance(batch_id, int):
        issues.append(ValidationIssue("RECORD_BATCH_ID", "batch_id must be an integer."))

    cells = obj.get("cells", [])
    if not isinstance(cells, list):
        issues.append(ValidationIssue("RECORD_CELLS_TYPE", "cells must be a list."))
        cells = []

    seen_uids: set = set()
    for i, c in enumerate(cells):
        if not isinstance(c, dict):
            issues.append(ValidationIssue("CELL_TYPE", f"cells[{i}] must be an object."))
            continue
        uid = c.get(UID)
        if isinstance(uid, bool) or not isinstance(uid, int):
            issues.append(ValidationIssue("CELL_UID", f"cells[{i}].uid must be an integer."))
        elif uid in seen_uids:
            issues.append(ValidationIssue("CELL_UID_DUPLICATE", f"cells[{i}].uid {uid} is duplicated."))
        else:
            seen_uids.add(uid)
        for name in SET_FIELDS:
            if name in c and c[name] is not None and not isinstance(c[name], list):
                issues.append(ValidationIssue("CELL_SET_FIELD", f"cells[{i}].{name} must be a list."))
        for name in CLASSIFICATION_FIELDS:
            if name not in SET_FIELDS and name in c and isinstance(c[name], (list, dict)):
                issues.append(ValidationIssue("CELL_FIELD_TYPE", f"cells[{i}].{name} must be a single value."))

    connections = obj.get("connections") or {}
    if not isinstance(connections, dict):
        issues.append(ValidationIssue("RECORD_CONNECTIONS_TYPE", "connections must be an object."))
    else:
        for pol, rows in connections.items():
            if not isinstance(rows, list) or not all(
                isinstance(r, list) and len(r) == 2 and all(isinstance(v, int) for v in r) for r in rows
            ):
                issues.append(ValidationIssue("RECORD_CONNECTIONS_ROWS", f"connections.{pol} must be [pre, post] pairs."))

    provenance = obj.get("provenance", [])
    if not isinstance(provenance, list) or not all(
        isinstance(p, dict) and p.get("action") and p.get("field") for p in provenance
    ):
        issues.append(ValidationIssue("RECORD_PROVENANCE", "provenance must be a list of {action, field, ...} objects."))

    if issues:
        raise ValidationError(issues)

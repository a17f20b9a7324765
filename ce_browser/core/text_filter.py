from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd

from ce_browser.validation.errors import ValidationIssue

logger = logging.getLogger(__name__)

AND_SEPARATOR = " & "
OR_SEPARATOR = " | "

_COMPARISON_RE = re.compile(r"^\.(?P<field>[A-Za-z_]\w*)\s*(?P<op>==|~=|>|<)\s*(?P<value>\S.*)$")

_OPERATORS: Dict[str, Callable[[pd.Series, float], pd.Series]] = {
    ">": operator.gt,
    "<": operator.lt,
    "==": operator.eq,
    "~=": operator.ne,
}


@dataclass(frozen=True)
class Clause:
    """
    One atomic piece of a free-text query.

    Either a numeric comparison ``.field OP value`` or a plain substring.
    ``issue`` is set when a comparison could not be parsed; such a clause
    constrains nothing.
    """

    raw: str
    field: Optional[str] = None
    op: Optional[str] = None
    value: Optional[float] = None
    issue: Optional[ValidationIssue] = None

    @property
    def is_comparison(self) -> bool:
        return self.raw.startswith(".")


def parse_clause(raw: str) -> Clause:
    if not raw.startswith("."):
        return Clause(raw=raw)

    m = _COMPARISON_RE.match(raw)
    if m is None:
        return Clause(
            raw=raw,
            issue=ValidationIssue("TEXT_FILTER_MALFORMED", f"Cannot parse comparison '{raw}' (expected .field OP value)"),
        )

    try:
        value = float(m.group("value").strip())
    except ValueError:
        return Clause(
            raw=raw,
            issue=ValidationIssue("TEXT_FILTER_MALFORMED", f"'{m.group('value').strip()}' in '{raw}' is not a number"),
        )

    return Clause(raw=raw, field=m.group("field"), op=m.group("op"), value=value)


def split_query(text: str) -> List[List[Clause]]:
    """
    Split a query into OR-groups of AND-clauses.

    ``A & B | C`` becomes ``[[A, B], [C]]``: ``&`` binds inside a group and
    ``|`` unions whole groups, so the query reads as ``(A & B) | C``.
    Empty clauses and groups are dropped.
    """
    groups: List[List[Clause]] = []
    for group_text in (text or "").split(OR_SEPARATOR):
        clauses = [parse_clause(c.strip()) for c in group_text.split(AND_SEPARATOR) if c.strip()]
        if clauses:
            groups.append(clauses)
    return groups


def evaluate_query(
    text: str,
    numeric: pd.DataFrame,
    haystack: pd.Series,
) -> Tuple[Optional[pd.Series], List[ValidationIssue]]:
    """
    Evaluate a free-text query into a boolean mask over cells.

    :param text: the query
    :param numeric: numeric attributes, one column per field, indexed by cell
    :param haystack: lower-cased concatenation of each cell's text fields
    :return: (mask, issues); mask is None when the query is blank

    Clauses with issues (malformed comparison, unknown field) are reported
    and treated as unconstrained instead of emptying the result.
    """
    groups = split_query(text)
    if not groups:
        return None, []

    issues: List[ValidationIssue] = []
    result: Optional[pd.Series] = None

    for group in groups:
        group_mask = pd.Series(True, index=haystack.index)
        # & intersects left to right
        for clause in group:
            mask, issue = _evaluate_clause(clause, numeric, haystack)
            if issue is not None:
                issues.append(issue)
                continue
            group_mask &= mask

        result = group_mask if result is None else (result | group_mask)

    for issue in issues:
        logger.warning("Ignoring free-text clause", extra={"code": issue.code, "detail": issue.message})

    return result, issues


def _evaluate_clause(
    clause: Clause,
    numeric: pd.DataFrame,
    haystack: pd.Series,
) -> Tuple[Optional[pd.Series], Optional[ValidationIssue]]:
    if clause.issue is not None:
        return None, clause.issue

    if not clause.is_comparison:
        needle = clause.raw.lower()
        return haystack.str.contains(needle, regex=False).fillna(False).astype(bool), None

    if clause.field not in numeric.columns:
        return None, ValidationIssue(
            "TEXT_FILTER_UNKNOWN_FIELD", f"Unknown numeric field '{clause.field}' in '{clause.raw}'"
        )

    col = pd.to_numeric(numeric[clause.field], errors="coerce")
    mask = _OPERATORS[clause.op](col, clause.value)
    return mask.reindex(haystack.index, fill_value=False).astype(bool), None

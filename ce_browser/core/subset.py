from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

import numpy as np
import pandas as pd

from ce_browser.core.cell_store import CellStore
from ce_browser.core.fields import CELL_TYPE, GROUND_TRUTH, SET_FIELDS, TAGS
from ce_browser.core.filter_state import FilterState
from ce_browser.core.text_filter import evaluate_query
from ce_browser.validation.errors import ValidationIssue

logger = logging.getLogger(__name__)

# Synthetic classes used while compare mode is on
COMPARE_OUTSIDE = 1
COMPARE_INSIDE = 2

DerivedAttributes = Callable[[], pd.DataFrame]


def _copy_state(state: FilterState) -> FilterState:
    return FilterState.from_dict(state.to_dict())


@dataclass(frozen=True)
class SubsetResult:
    """
    Output of one resolution cycle.

    - indices: the active subset
    - class_labels: class shown for each active cell; the cell type normally,
      COMPARE_OUTSIDE / COMPARE_INSIDE in compare mode
    - issues: problems found in the text or group predicates (ignored predicates)
    """

    indices: FrozenSet[int]
    class_labels: pd.Series
    issues: Tuple[ValidationIssue, ...]
    compare_mode: bool


class SubsetResolver:
    """
    Combines the filter predicates into the active subset of cells.

    Resolution is a pure function of the current FilterState, the CellStore
    and the connectivity-derived attributes; nothing is cached, so two calls
    without a predicate change return the same set. Resolution order:

    1. cells whose cell type is in the class filter
    2. minus cells with any excluded tag
    3. intersect cells with at least one included tag (if any are given)
    4. intersect the group filter (skipped in compare mode)
    5. intersect the free-text query
    6. compare mode: keep every cell, relabelled by membership of the above
    """

    def __init__(
        self,
        store: CellStore,
        *,
        derived_attributes: Optional[DerivedAttributes] = None,
        state: Optional[FilterState] = None,
    ) -> None:
        self._store = store
        self._derived_attributes = derived_attributes
        self._state = _copy_state(state) if state is not None else FilterState()
        self._last_issues: Tuple[ValidationIssue, ...] = ()

    # -------------------------------------------------------------------------
    # Predicate setters
    # -------------------------------------------------------------------------
    @property
    def state(self) -> FilterState:
        return _copy_state(self._state)

    def set_state(self, state: FilterState) -> None:
        self._state = _copy_state(state)

    def set_derived_attributes(self, provider: Optional[DerivedAttributes]) -> None:
        self._derived_attributes = provider

    def set_class_filter(self, cell_types: Optional[Iterable[str]]) -> None:
        self._state.cell_types = list(cell_types) if cell_types is not None else None

    def set_tag_filter(self, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> None:
        self._state.tag_include = list(include)
        self._state.tag_exclude = list(exclude)

    def set_text_filter(self, text: Optional[str]) -> None:
        self._state.text = text or ""

    def set_group_filter(self, attribute: Optional[str], values: Iterable[Any] = ()) -> None:
        """Pass attribute=None to clear the group filter."""
        self._state.group_attribute = attribute
        self._state.group_values = list(values) if attribute is not None else []

    def set_compare_mode(self, enabled: bool) -> None:
        self._state.compare_mode = bool(enabled)

    @property
    def last_issues(self) -> Tuple[ValidationIssue, ...]:
        return self._last_issues

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------
    def resolve(self) -> SubsetResult:
        state = self._state
        df = self._store.frame()
        derived = self._derived_frame(df.index)
        issues: List[ValidationIssue] = []

        # 1. class inclusion
        if state.cell_types is None:
            mask = pd.Series(True, index=df.index)
        else:
            mask = df[CELL_TYPE].isin(list(state.cell_types))

        # 2. tag exclusion
        if state.tag_exclude:
            mask &= ~_intersects(df[TAGS], state.tag_exclude)

        # 3. tag inclusion
        if state.tag_include:
            mask &= _intersects(df[TAGS], state.tag_include)

        # 4. group inclusion
        if state.group_active:
            group_mask, issue = self._group_mask(df, derived, state.group_attribute, state.group_values)
            if issue is not None:
                issues.append(issue)
            else:
                mask &= group_mask

        # 5. free text
        if state.text.strip():
            numeric = self._numeric_frame(df, derived)
            haystack = self._haystack(df, derived)
            text_mask, text_issues = evaluate_query(state.text, numeric, haystack)
            issues.extend(text_issues)
            if text_mask is not None:
                mask &= text_mask

        mask = mask.astype(bool)

        # 6. compare mode: transient projection, cell types are left untouched
        if state.compare_mode:
            labels = pd.Series(
                np.where(mask.to_numpy(), COMPARE_INSIDE, COMPARE_OUTSIDE),
                index=df.index,
                name="class",
            )
            indices = frozenset(int(i) for i in df.index)
        else:
            active = df.index[mask.to_numpy()]
            labels = df.loc[active, CELL_TYPE].rename("class")
            indices = frozenset(int(i) for i in active)

        self._last_issues = tuple(issues)
        logger.debug(
            "Resolved active subset",
            extra={"n_active": len(indices), "compare_mode": state.compare_mode, "n_issues": len(issues)},
        )
        return SubsetResult(
            indices=indices,
            class_labels=labels,
            issues=tuple(issues),
            compare_mode=state.compare_mode,
        )

    def resolve_subset(self) -> Set[int]:
        return set(self.resolve().indices)

    def class_labels(self) -> pd.Series:
        return self.resolve().class_labels

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------
    def _derived_frame(self, index: pd.Index) -> pd.DataFrame:
        if self._derived_attributes is None:
            return pd.DataFrame(index=index)
        return self._derived_attributes().reindex(index)

    def _group_mask(
        self,
        df: pd.DataFrame,
        derived: pd.DataFrame,
        attribute: str,
        values: List[Any],
    ) -> Tuple[Optional[pd.Series], Optional[ValidationIssue]]:
        if attribute in df.columns:
            col = df[attribute]
        elif attribute in derived.columns:
            col = derived[attribute]
        else:
            return None, ValidationIssue("GROUP_FILTER_UNKNOWN_ATTRIBUTE", f"Unknown attribute '{attribute}'")

        if attribute in SET_FIELDS:
            return _intersects(col, [str(v) for v in values]), None

        wanted = [str(v) for v in values]
        return col.astype(str).isin(wanted), None

    def _numeric_frame(self, df: pd.DataFrame, derived: pd.DataFrame) -> pd.DataFrame:
        numeric = df[self._store.numeric_fields()]
        derived_numeric = derived.select_dtypes(include="number")
        return pd.concat([numeric, derived_numeric], axis=1)

    def _haystack(self, df: pd.DataFrame, derived: pd.DataFrame) -> pd.Series:
        """
        Lower-cased concatenation of every string-valued field of each cell.
        Tags and ground truth are not searched.
        """
        parts = [df[c] for c in self._store.string_fields() if c not in (TAGS, GROUND_TRUTH)]
        parts += [derived[c] for c in derived.columns if not pd.api.types.is_numeric_dtype(derived[c])]

        hay = pd.Series("", index=df.index, dtype=object)
        for part in parts:
            hay = hay + " " + part.fillna("").astype(str)
        return hay.str.lower()


def _intersects(sets: pd.Series, wanted: Iterable[str]) -> pd.Series:
    wanted = frozenset(wanted)
    return sets.map(lambda s: not wanted.isdisjoint(s)).astype(bool)

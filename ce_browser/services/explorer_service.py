from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ce_browser.core.classification import SaveMode, SaveReport, UndoResult
from ce_browser.core.connectivity import ConnectionView, DisplayMode, HighlightSets, Polarity
from ce_browser.core.context import ExplorerContext
from ce_browser.core.exceptions import StateError
from ce_browser.core.fields import (
    BRAIN_REGION,
    CELL_TYPE,
    CLASSIFICATION_FIELDS,
    DEEP_SUPERFICIAL,
    GROUND_TRUTH,
    LABEL,
    TAGS,
)
from ce_browser.core.history import ClassificationEvent
from ce_browser.core.subset import SubsetResult
from ce_browser.services.persistence import PersistenceGateway
from ce_browser.validation.errors import ValidationError, ValidationIssue

logger = logging.getLogger(__name__)


class SetAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class ExplorerService:
    """
    Query surface used by the UI (or a test harness).

    Filter setters return the new active subset; focus / mode setters return
    the recomputed connections. Every classification change is routed
    through ClassificationState.assign.
    """

    def __init__(self, context: ExplorerContext, gateway: Optional[PersistenceGateway] = None):
        self.context = context
        self.gateway = gateway

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------
    def subset(self) -> SubsetResult:
        return self.context.resolver.resolve()

    def active_subset(self) -> Set[int]:
        return self.context.resolver.resolve_subset()

    def set_class_filter(self, cell_types: Optional[Iterable[str]]) -> Set[int]:
        self.context.resolver.set_class_filter(cell_types)
        return self.active_subset()

    def set_tag_filter(self, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> Set[int]:
        self.context.resolver.set_tag_filter(include, exclude)
        return self.active_subset()

    def set_text_filter(self, text: Optional[str]) -> Set[int]:
        self.context.resolver.set_text_filter(text)
        return self.active_subset()

    def set_group_filter(self, attribute: Optional[str], values: Iterable[Any] = ()) -> Set[int]:
        self.context.resolver.set_group_filter(attribute, values)
        return self.active_subset()

    def set_compare_mode(self, enabled: bool) -> Set[int]:
        self.context.resolver.set_compare_mode(enabled)
        return self.active_subset()

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------
    def set_focus(self, cell: Optional[int]) -> ConnectionView:
        if cell is not None:
            (cell,) = self.context.store.check_indices([cell])
        self.context.focus = cell
        return self.connections()

    def set_connectivity_mode(self, mode: "DisplayMode | str") -> ConnectionView:
        self.context.display_mode = DisplayMode.parse(mode)
        return self.connections()

    def set_polarities(self, polarities: Iterable["Polarity | str"]) -> ConnectionView:
        self.context.polarities = frozenset(Polarity(p) for p in polarities)
        return self.connections()

    def connections(self) -> ConnectionView:
        ctx = self.context
        return ctx.graph.connections_for(
            ctx.focus,
            ctx.display_mode,
            ctx.polarities,
            max_hops=ctx.settings.max_hops,
        )

    def highlight_sets(self) -> HighlightSets:
        return self.context.graph.highlight_sets()

    def replace_connections(
        self,
        excitatory: Iterable[Tuple[int, int]],
        inhibitory: Iterable[Tuple[int, int]],
        batch_id: int,
    ) -> ConnectionView:
        """
        Replace one session's curated connections; the session is marked
        touched so the next save persists them.
        """
        ctx = self.context
        ctx.graph.replace_connections(excitatory, inhibitory, batch_id)
        ctx.classification.mark_touched(ctx.store.indices_for_batch(batch_id))
        return self.connections()

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------
    def assign_cell_type(
        self,
        indices: Iterable[int],
        cell_type: str,
        *,
        create: bool = False,
    ) -> Optional[ClassificationEvent]:
        """
        Assign a cell type. With create=True an unknown type is first added to
        the list of classes.
        """
        if create:
            self.context.registry.add_choice(CELL_TYPE, cell_type)
        return self.context.classification.assign(indices, CELL_TYPE, cell_type)

    def assign_tag(
        self,
        indices: Iterable[int],
        tag: str,
        action: "SetAction | str" = SetAction.ADD,
    ) -> Optional[ClassificationEvent]:
        return self._assign_set_member(indices, TAGS, tag, SetAction(action))

    def assign_ground_truth(
        self,
        indices: Iterable[int],
        value: str,
        action: "SetAction | str" = SetAction.ADD,
    ) -> Optional[ClassificationEvent]:
        return self._assign_set_member(indices, GROUND_TRUTH, value, SetAction(action))

    def assign_label(self, indices: Iterable[int], label: str) -> Optional[ClassificationEvent]:
        return self.context.classification.assign(indices, LABEL, label)

    def assign_brain_region(self, indices: Iterable[int], region: str) -> Optional[ClassificationEvent]:
        return self.context.classification.assign(indices, BRAIN_REGION, region)

    def assign_deep_superficial(self, indices: Iterable[int], value: str) -> Optional[ClassificationEvent]:
        return self.context.classification.assign(indices, DEEP_SUPERFICIAL, value)

    def undo(self) -> UndoResult:
        """Undo the last step and move the focus to the first restored cell."""
        result = self.context.classification.undo()
        if result.restored_indices:
            self.context.focus = result.restored_indices[0]
        return result

    def _assign_set_member(
        self,
        indices: Iterable[int],
        field_name: str,
        member: str,
        action: SetAction,
    ) -> Optional[ClassificationEvent]:
        state = self.context.classification
        idx = self.context.store.check_indices(indices)
        current = self.context.store.values(idx, field_name)
        if action is SetAction.ADD:
            new_values = {i: current[i] | {member} for i in idx}
        else:
            new_values = {i: current[i] - {member} for i in idx}
        return state.assign(idx, field_name, new_values)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    def _require_gateway(self) -> PersistenceGateway:
        if self.gateway is None:
            raise StateError("No persistence gateway configured")
        return self.gateway

    def save(self, mode: "SaveMode | str" = SaveMode.TOUCHED_ONLY) -> SaveReport:
        report = self.context.classification.save(SaveMode(mode), self._require_gateway())
        if not report.ok:
            logger.warning("Some sessions failed to save", extra={"failed": report.failed})
        return report

    def list_backups(self, batch_id: int) -> List[str]:
        ref = self.context.store.session(batch_id).ref
        return self._require_gateway().list_backups(ref)

    def restore_from_backup(self, batch_id: int, backup_id: str) -> List[ClassificationEvent]:
        """
        Bring one session's classification back to a backup.

        Every value in the backup is validated before anything is assigned, so
        a backup that cannot be applied raises ValidationError and leaves the
        store and the history untouched. The restore itself goes through
        ClassificationState (one event per changed field), so it is undoable
        and marks the session touched. Cells in the backup that are no longer
        in the session are skipped; cell types missing from the class list
        are added to it.
        """
        ctx = self.context
        ref = ctx.store.session(batch_id).ref
        snapshot = self._require_gateway().load_backup(ref, backup_id)

        index_by_uid = {ctx.store.get(i).uid: i for i in ctx.store.indices_for_batch(batch_id)}
        rows = snapshot.cells.to_dict(orient="records")

        plan: List[Tuple[str, Dict[int, Any]]] = []
        new_cell_types: List[str] = []
        issues: List[ValidationIssue] = []
        for field_name in CLASSIFICATION_FIELDS:
            if field_name not in snapshot.cells.columns:
                continue

            values = {}
            for row in rows:
                idx = index_by_uid.get(int(row["uid"]))
                if idx is not None:
                    values[idx] = row[field_name]
            if not values:
                continue

            spec = ctx.registry.get(field_name)
            for raw in values.values():
                if field_name == CELL_TYPE and isinstance(raw, str) and raw not in spec.choices:
                    if raw not in new_cell_types:
                        new_cell_types.append(raw)
                    continue
                try:
                    spec.normalise(raw)
                except ValidationError as e:
                    issues.extend(i for i in e.issues if i not in issues)
            plan.append((field_name, values))

        if issues:
            logger.warning(
                "Backup cannot be restored",
                extra={"batch_id": batch_id, "backup_id": backup_id, "n_issues": len(issues)},
            )
            raise ValidationError(issues)

        for ct in new_cell_types:
            ctx.registry.add_choice(CELL_TYPE, ct)

        events: List[ClassificationEvent] = []
        for field_name, values in plan:
            event = ctx.classification.assign(values.keys(), field_name, values)
            if event is not None:
                events.append(event)

        logger.info(
            "Restored session from backup",
            extra={"batch_id": batch_id, "backup_id": backup_id, "n_events": len(events)},
        )
        return events

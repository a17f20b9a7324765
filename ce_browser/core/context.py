from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ce_browser.config.model import ExplorerSettings
from ce_browser.core.cell_store import CellStore
from ce_browser.core.classification import ClassificationState
from ce_browser.core.connectivity import ALL_POLARITIES, ConnectivityGraph, DisplayMode, Polarity
from ce_browser.core.fields import CELL_TYPE, DEEP_SUPERFICIAL, FieldRegistry, default_registry
from ce_browser.core.subset import SubsetResolver
from ce_browser.metadata_io.session_record import ProvenanceEntry

if TYPE_CHECKING:
    from ce_browser.services.autosave import AutosaveSink
    from ce_browser.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


@dataclass
class ExplorerContext:
    """
    Holds the engine for one loaded dataset: settings, the cell store and the
    components reading or writing it, plus the current focus. Built once and
    passed to whatever needs it instead of sharing module-level globals.
    """

    settings: ExplorerSettings
    store: CellStore
    registry: FieldRegistry
    classification: ClassificationState
    resolver: SubsetResolver
    graph: ConnectivityGraph

    focus: Optional[int] = None
    display_mode: DisplayMode = DisplayMode.SELECTED
    polarities: FrozenSet[Polarity] = field(default_factory=lambda: ALL_POLARITIES)


def build_context(
    store: CellStore,
    excitatory: Optional[Iterable[Tuple[int, int]]] = None,
    inhibitory: Optional[Iterable[Tuple[int, int]]] = None,
    *,
    settings: Optional[ExplorerSettings] = None,
    autosave_sink: Optional["AutosaveSink"] = None,
    provenance: Optional[Dict[int, List[ProvenanceEntry]]] = None,
) -> ExplorerContext:
    """
    Wire the components together:
    - the graph reads the resolver's active subset
    - the resolver reads the graph's degree statistics
    - the classification state persists the graph's per-session edges
    """
    settings = settings or ExplorerSettings()
    registry = default_registry(
        settings,
        extra_cell_types=sorted(set(store.column(CELL_TYPE))),
        extra_deep_superficial=sorted(set(store.column(DEEP_SUPERFICIAL))),
    )

    graph = ConnectivityGraph(store, excitatory, inhibitory)
    classification = ClassificationState(
        store,
        registry,
        autosave_frequency=settings.autosave_frequency,
        autosave_sink=autosave_sink,
        history_limit=settings.history_limit,
        provenance=provenance,
        session_connections=graph.session_connections,
    )
    resolver = SubsetResolver(store, derived_attributes=graph.derived_attributes)
    graph.set_active_subset_provider(resolver.resolve_subset)

    return ExplorerContext(
        settings=settings,
        store=store,
        registry=registry,
        classification=classification,
        resolver=resolver,
        graph=graph,
        display_mode=DisplayMode.parse(settings.mono_syn_display),
    )


def load_context(
    gateway: "PersistenceGateway",
    refs: Sequence[str],
    *,
    settings: Optional[ExplorerSettings] = None,
    autosave_sink: Optional["AutosaveSink"] = None,
) -> ExplorerContext:
    """
    Load one or more sessions through the gateway and build a context for
    them. Session connections are stored by uid and mapped to global indices
    here; edges naming unknown uids are dropped with a warning.
    """
    snapshots = [gateway.load(ref) for ref in refs]
    store = CellStore.from_snapshots(snapshots)

    excitatory: List[Tuple[int, int]] = []
    inhibitory: List[Tuple[int, int]] = []
    for snap in snapshots:
        by_uid = {store.get(i).uid: i for i in store.indices_for_batch(snap.batch_id)}
        for pol, target in ((Polarity.EXCITATORY, excitatory), (Polarity.INHIBITORY, inhibitory)):
            for pre_uid, post_uid in snap.connections.get(pol.value, []):
                pre, post = by_uid.get(pre_uid), by_uid.get(post_uid)
                if pre is None or post is None:
                    logger.warning(
                        "Dropping connection with unknown uid",
                        extra={"ref": snap.ref, "polarity": pol.value, "pre": pre_uid, "post": post_uid},
                    )
                    continue
                target.append((pre, post))

    provenance = {snap.batch_id: list(snap.provenance) for snap in snapshots}
    logger.info("Loaded sessions", extra={"refs": list(refs), "n_cells": store.cell_count})

    return build_context(
        store,
        excitatory,
        inhibitory,
        settings=settings,
        autosave_sink=autosave_sink,
        provenance=provenance,
    )

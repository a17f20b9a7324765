from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING

import numpy as np
import pandas as pd

from ce_browser.validation.errors import ValidationError, ValidationIssue

if TYPE_CHECKING:
    from ce_browser.core.cell_store import CellStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 10

ActiveSubset = Callable[[], AbstractSet[int]]


class Polarity(str, Enum):
    EXCITATORY = "excitatory"
    INHIBITORY = "inhibitory"


ALL_POLARITIES: FrozenSet[Polarity] = frozenset(Polarity)


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"

    # Aliases, relative to a focused cell
    UPSTREAM = "incoming"
    DOWNSTREAM = "outgoing"


class DisplayMode(str, Enum):
    """
    Which connections are computed for the focused cell. Values are the
    labels used in the preferences file.
    """

    NONE = "None"
    SELECTED = "Selected"
    UPSTREAM = "Upstream"
    DOWNSTREAM = "Downstream"
    UP_AND_DOWNSTREAM = "Up & downstream"
    ALL = "All"

    @classmethod
    def parse(cls, value: "str | DisplayMode") -> DisplayMode:
        """
        Accepts a DisplayMode, its label ("Up & downstream") or its name
        ("UP_AND_DOWNSTREAM", "UpAndDownstream"), case-insensitively.
        """
        if isinstance(value, DisplayMode):
            return value

        key = str(value).strip().lower()
        for mode in cls:
            squashed_name = mode.name.replace("_", "").lower()
            if key in (mode.value.lower(), mode.name.lower(), squashed_name):
                return mode

        raise ValueError(
            f"Unknown connectivity display mode '{value}' (expected one of {', '.join(m.value for m in cls)})"
        )


@dataclass(frozen=True, order=True)
class EdgeRef:
    """Address of one connection: its polarity and row in that edge list."""

    polarity: Polarity
    row: int


@dataclass(frozen=True)
class ClosureResult:
    reached: FrozenSet[int]
    last_hop_edges: FrozenSet[EdgeRef]
    hops: int


@dataclass(frozen=True)
class ConnectionView:
    """
    Connections computed for the focused cell under a display mode.

    - cells: connected cells (the focus itself is not included)
    - edges: every edge contributing to the result
    - last_hop_edges: edges into the outermost layer of an up/downstream closure
    """

    mode: DisplayMode
    focus: Optional[int]
    cells: FrozenSet[int] = frozenset()
    edges: FrozenSet[EdgeRef] = frozenset()
    last_hop_edges: FrozenSet[EdgeRef] = frozenset()


@dataclass(frozen=True)
class HighlightSets:
    """
    Cells to highlight in scatter views, restricted to the active subset.

    - excitatory / inhibitory: presynaptic cells of the respective polarity
    - excitatory_postsynaptic / inhibitory_postsynaptic: their targets
    """

    excitatory: FrozenSet[int]
    inhibitory: FrozenSet[int]
    excitatory_postsynaptic: FrozenSet[int]
    inhibitory_postsynaptic: FrozenSet[int]


class ConnectivityGraph:
    """
    Directed excitatory / inhibitory connections between cells.

    Each polarity is an (n, 2) integer array of (presynaptic, postsynaptic)
    global cell indices, for the whole dataset. Traversals only see the
    subgraph induced by the active subset: an edge with an endpoint outside
    the subset does not exist for them.

    Degree statistics per cell are kept here (never written to the
    CellStore) and exposed through ``derived_attributes`` so that filters
    can query them.
    """

    DEGREE_COLUMNS = [
        "excitatory_in",
        "excitatory_out",
        "inhibitory_in",
        "inhibitory_out",
        "synaptic_connections_in",
        "synaptic_connections_out",
        "net_synaptic_effect",
        "synaptic_effect",
    ]

    def __init__(
        self,
        store: "CellStore",
        excitatory: Optional[Iterable[Tuple[int, int]]] = None,
        inhibitory: Optional[Iterable[Tuple[int, int]]] = None,
        *,
        active_subset: Optional[ActiveSubset] = None,
    ) -> None:
        self._store = store
        self._active_subset = active_subset

        edges = {
            Polarity.EXCITATORY: _as_edge_array(excitatory, Polarity.EXCITATORY),
            Polarity.INHIBITORY: _as_edge_array(inhibitory, Polarity.INHIBITORY),
        }
        issues: List[ValidationIssue] = []
        for pol, arr in edges.items():
            issues.extend(self._range_issues(pol, arr))
        if issues:
            raise ValidationError(issues)

        self._edges: Dict[Polarity, np.ndarray] = edges
        self._degrees = self._degree_table()

        logger.info(
            "Connectivity graph initialised",
            extra={
                "n_excitatory": len(edges[Polarity.EXCITATORY]),
                "n_inhibitory": len(edges[Polarity.INHIBITORY]),
            },
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------
    def set_active_subset_provider(self, provider: Optional[ActiveSubset]) -> None:
        self._active_subset = provider

    def edges(self, polarity: Polarity) -> np.ndarray:
        return self._edges[Polarity(polarity)].copy()

    def edge(self, ref: EdgeRef) -> Tuple[int, int]:
        pre, post = self._edges[ref.polarity][ref.row]
        return int(pre), int(post)

    def session_connections(self, batch_id: int) -> Dict[str, List[Tuple[int, int]]]:
        """
        Edges lying inside one session, as (pre uid, post uid) pairs keyed by
        polarity, for persisting with that session.
        """
        scope_arr = np.array(sorted(self._store.indices_for_batch(batch_id)), dtype=np.int64)
        uids = self._store.column("uid")
        out: Dict[str, List[Tuple[int, int]]] = {}
        for pol, arr in self._edges.items():
            inside = np.isin(arr[:, 0], scope_arr) & np.isin(arr[:, 1], scope_arr)
            out[pol.value] = [(int(uids.at[pre]), int(uids.at[post])) for pre, post in arr[inside]]
        return out

    def derived_attributes(self) -> pd.DataFrame:
        """Per-cell degree statistics, indexed by cell index."""
        return self._degrees.copy()

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------
    def direct_neighbors(
        self,
        cell: int,
        direction: Direction,
        polarities: Iterable[Polarity] = ALL_POLARITIES,
        *,
        active: Optional[AbstractSet[int]] = None,
    ) -> Tuple[Set[int], Set[EdgeRef]]:
        """
        Cells one edge away from ``cell`` in ``direction`` and the edges used.
        """
        active_arr = self._active_array(active)
        direction = Direction(direction)
        neighbors: Set[int] = set()
        refs: Set[EdgeRef] = set()

        if not _contains(active_arr, cell):
            return neighbors, refs

        src, dst = (0, 1) if direction is Direction.OUTGOING else (1, 0)
        for pol, arr, visible in self._visible(polarities, active_arr):
            hit = visible & (arr[:, src] == cell)
            for row in np.flatnonzero(hit):
                neighbors.add(int(arr[row, dst]))
                refs.add(EdgeRef(pol, int(row)))

        return neighbors, refs

    def closure(
        self,
        cell: int,
        direction: Direction,
        polarities: Iterable[Polarity] = ALL_POLARITIES,
        max_hops: int = DEFAULT_MAX_HOPS,
        *,
        active: Optional[AbstractSet[int]] = None,
    ) -> ClosureResult:
        """
        Breadth-first expansion from ``cell`` strictly along ``direction``.

        Stops when an iteration discovers no new cell or after ``max_hops``
        iterations. Every cell is expanded at most once, so cycles terminate;
        the start cell is pre-visited and never part of ``reached``.
        ``last_hop_edges`` are the edges that discovered the final layer.
        """
        if max_hops < 1:
            raise ValueError("max_hops must be at least 1")

        active_arr = self._active_array(active)
        direction = Direction(direction)

        if not _contains(active_arr, cell):
            return ClosureResult(reached=frozenset(), last_hop_edges=frozenset(), hops=0)

        src, dst = (0, 1) if direction is Direction.OUTGOING else (1, 0)
        visible = self._visible(polarities, active_arr)

        visited: Set[int] = {cell}
        frontier: Set[int] = {cell}
        last_hop: Set[EdgeRef] = set()
        hops = 0

        while frontier and hops < max_hops:
            frontier_arr = np.fromiter(frontier, dtype=np.int64)
            discovered: Set[int] = set()
            hop_edges: Set[EdgeRef] = set()

            for pol, arr, vis in visible:
                hit = vis & np.isin(arr[:, src], frontier_arr)
                for row in np.flatnonzero(hit):
                    target = int(arr[row, dst])
                    if target not in visited:
                        discovered.add(target)
                        hop_edges.add(EdgeRef(pol, int(row)))

            if not discovered:
                break

            hops += 1
            visited |= discovered
            frontier = discovered
            last_hop = hop_edges

        return ClosureResult(
            reached=frozenset(visited - {cell}),
            last_hop_edges=frozenset(last_hop),
            hops=hops,
        )

    def visible_edges(
        self,
        polarities: Iterable[Polarity] = ALL_POLARITIES,
        *,
        active: Optional[AbstractSet[int]] = None,
    ) -> Set[EdgeRef]:
        """Every edge whose endpoints are both in the active subset."""
        active_arr = self._active_array(active)
        return {
            EdgeRef(pol, int(row))
            for pol, _arr, vis in self._visible(polarities, active_arr)
            for row in np.flatnonzero(vis)
        }

    def connections_for(
        self,
        focus: Optional[int],
        mode: "DisplayMode | str",
        polarities: Iterable[Polarity] = ALL_POLARITIES,
        *,
        max_hops: int = DEFAULT_MAX_HOPS,
        active: Optional[AbstractSet[int]] = None,
    ) -> ConnectionView:
        """
        Run the traversal selected by ``mode`` for the focused cell.
        """
        mode = DisplayMode.parse(mode)
        polarities = frozenset(Polarity(p) for p in polarities)

        if mode is DisplayMode.NONE:
            return ConnectionView(mode=mode, focus=focus)

        if active is None:
            active = self._resolve_active()

        if mode is DisplayMode.ALL:
            refs = self.visible_edges(polarities, active=active)
            cells = {c for ref in refs for c in self.edge(ref)}
            return ConnectionView(mode=mode, focus=focus, cells=frozenset(cells), edges=frozenset(refs))

        if focus is None:
            return ConnectionView(mode=mode, focus=None)

        if mode is DisplayMode.SELECTED:
            cells: Set[int] = set()
            refs: Set[EdgeRef] = set()
            for direction in (Direction.INCOMING, Direction.OUTGOING):
                n, r = self.direct_neighbors(focus, direction, polarities, active=active)
                cells |= n
                refs |= r
            cells.discard(focus)
            return ConnectionView(mode=mode, focus=focus, cells=frozenset(cells), edges=frozenset(refs))

        directions = {
            DisplayMode.UPSTREAM: (Direction.INCOMING,),
            DisplayMode.DOWNSTREAM: (Direction.OUTGOING,),
            DisplayMode.UP_AND_DOWNSTREAM: (Direction.INCOMING, Direction.OUTGOING),
        }[mode]

        reached: Set[int] = set()
        last_hop: Set[EdgeRef] = set()
        for direction in directions:
            result = self.closure(focus, direction, polarities, max_hops, active=active)
            reached |= result.reached
            last_hop |= result.last_hop_edges

        # Aggregate edges: every visible edge among the focus and the cells it reaches
        members = reached | {focus}
        refs = {ref for ref in self.visible_edges(polarities, active=active) if set(self.edge(ref)) <= members}

        reached.discard(focus)
        return ConnectionView(
            mode=mode,
            focus=focus,
            cells=frozenset(reached),
            edges=frozenset(refs),
            last_hop_edges=frozenset(last_hop),
        )

    def highlight_sets(self, *, active: Optional[AbstractSet[int]] = None) -> HighlightSets:
        active_arr = self._active_array(active)
        pre: Dict[Polarity, Set[int]] = {}
        post: Dict[Polarity, Set[int]] = {}
        for pol, arr, vis in self._visible(ALL_POLARITIES, active_arr):
            pre[pol] = set(int(c) for c in arr[vis, 0])
            post[pol] = set(int(c) for c in arr[vis, 1])
        return HighlightSets(
            excitatory=frozenset(pre[Polarity.EXCITATORY]),
            inhibitory=frozenset(pre[Polarity.INHIBITORY]),
            excitatory_postsynaptic=frozenset(post[Polarity.EXCITATORY]),
            inhibitory_postsynaptic=frozenset(post[Polarity.INHIBITORY]),
        )

    # -------------------------------------------------------------------------
    # Curation
    # -------------------------------------------------------------------------
    def replace_connections(
        self,
        new_excitatory: Iterable[Tuple[int, int]],
        new_inhibitory: Iterable[Tuple[int, int]],
        scope_batch_id: int,
    ) -> None:
        """
        Swap every edge lying inside session ``scope_batch_id`` for the given
        ones, leaving other sessions' edges untouched, then recompute degree
        statistics for the cells of that session.

        All new edges must lie inside the session; nothing changes if any
        does not.
        """
        try:
            scope = self._store.indices_for_batch(scope_batch_id)
        except KeyError:
            raise ValidationError.single("EDGE_SCOPE_UNKNOWN", f"Unknown batch_id {scope_batch_id}")

        scope_arr = np.array(sorted(scope), dtype=np.int64)
        incoming = {
            Polarity.EXCITATORY: _as_edge_array(new_excitatory, Polarity.EXCITATORY),
            Polarity.INHIBITORY: _as_edge_array(new_inhibitory, Polarity.INHIBITORY),
        }

        issues: List[ValidationIssue] = []
        for pol, arr in incoming.items():
            range_issues = self._range_issues(pol, arr)
            issues.extend(range_issues)
            if range_issues:
                continue
            outside = ~(np.isin(arr[:, 0], scope_arr) & np.isin(arr[:, 1], scope_arr))
            if outside.any():
                rows = [tuple(int(v) for v in r) for r in arr[outside]]
                issues.append(
                    ValidationIssue("EDGE_SCOPE", f"{pol.value} edges {rows} leave session {scope_batch_id}")
                )
        if issues:
            raise ValidationError(issues)

        updated: Dict[Polarity, np.ndarray] = {}
        for pol, arr in self._edges.items():
            in_scope = np.isin(arr[:, 0], scope_arr) & np.isin(arr[:, 1], scope_arr)
            new_rows = np.unique(incoming[pol], axis=0) if len(incoming[pol]) else incoming[pol]
            updated[pol] = np.vstack([arr[~in_scope], new_rows]).astype(np.int64)

        self._edges = updated
        self._update_degrees(scope)

        logger.info(
            "Connections replaced",
            extra={
                "batch_id": scope_batch_id,
                "n_excitatory": len(incoming[Polarity.EXCITATORY]),
                "n_inhibitory": len(incoming[Polarity.INHIBITORY]),
            },
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------
    def _resolve_active(self) -> AbstractSet[int]:
        if self._active_subset is None:
            return set(range(1, self._store.cell_count + 1))
        return self._active_subset()

    def _active_array(self, active: Optional[AbstractSet[int]]) -> np.ndarray:
        if active is None:
            active = self._resolve_active()
        return np.array(sorted(active), dtype=np.int64)

    def _visible(
        self,
        polarities: Iterable[Polarity],
        active_arr: np.ndarray,
    ) -> List[Tuple[Polarity, np.ndarray, np.ndarray]]:
        out = []
        for pol in sorted(Polarity(p) for p in polarities):
            arr = self._edges[pol]
            visible = np.isin(arr[:, 0], active_arr) & np.isin(arr[:, 1], active_arr)
            out.append((pol, arr, visible))
        return out

    def _range_issues(self, polarity: Polarity, arr: np.ndarray) -> List[ValidationIssue]:
        n = self._store.cell_count
        bad = (arr < 1) | (arr > n)
        if not bad.any():
            return []
        rows = [tuple(int(v) for v in r) for r in arr[bad.any(axis=1)]]
        return [ValidationIssue("EDGE_INDEX", f"{polarity.value} edges {rows} reference cells outside 1..{n}")]

    def _degree_table(self) -> pd.DataFrame:
        n = self._store.cell_count
        index = pd.RangeIndex(1, n + 1, name="cell")

        def count(pol: Polarity, col: int) -> np.ndarray:
            arr = self._edges[pol]
            return np.bincount(arr[:, col], minlength=n + 1)[1:n + 1]

        exc_out = count(Polarity.EXCITATORY, 0)
        exc_in = count(Polarity.EXCITATORY, 1)
        inh_out = count(Polarity.INHIBITORY, 0)
        inh_in = count(Polarity.INHIBITORY, 1)

        effect = np.full(n, "Unknown", dtype=object)
        effect[(exc_out > 0) & (inh_out == 0)] = "Excitatory"
        effect[(inh_out > 0) & (exc_out == 0)] = "Inhibitory"
        effect[(exc_out > 0) & (inh_out > 0)] = "Mixed"

        return pd.DataFrame(
            {
                "excitatory_in": exc_in,
                "excitatory_out": exc_out,
                "inhibitory_in": inh_in,
                "inhibitory_out": inh_out,
                "synaptic_connections_in": exc_in + inh_in,
                "synaptic_connections_out": exc_out + inh_out,
                "net_synaptic_effect": exc_out - inh_out,
                "synaptic_effect": effect,
            },
            index=index,
            columns=self.DEGREE_COLUMNS,
        )

    def _update_degrees(self, cells: AbstractSet[int]) -> None:
        """Recompute degree statistics for exactly the given cells."""
        if not cells:
            return
        fresh = self._degree_table()
        rows = sorted(cells)
        self._degrees.loc[rows, :] = fresh.loc[rows, :]


def _as_edge_array(rows: Optional[Iterable[Tuple[int, int]]], polarity: Polarity) -> np.ndarray:
    if rows is None:
        return np.empty((0, 2), dtype=np.int64)
    if not isinstance(rows, np.ndarray):
        rows = list(rows)
    arr = np.asarray(rows, dtype=np.int64)
    if arr.size == 0:
        return np.empty((0, 2), dtype=np.int64)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValidationError.single(
            "EDGE_SHAPE", f"{polarity.value} edges must be (pre, post) pairs, got shape {arr.shape}"
        )
    return arr


def _contains(sorted_arr: np.ndarray, value: int) -> bool:
    pos = np.searchsorted(sorted_arr, value)
    return bool(pos < len(sorted_arr) and sorted_arr[pos] == value)

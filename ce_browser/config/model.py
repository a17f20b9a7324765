from __future__ import annotations

from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional

# ---- Defaults mirror the CellExplorer preferences shipped with the lab ----

DEFAULT_CELL_TYPES = ["Unknown", "Pyramidal Cell", "Narrow Interneuron", "Wide Interneuron"]
DEFAULT_DEEP_SUPERFICIAL = ["Unknown", "Cortical", "Deep", "Superficial"]
DEFAULT_TAGS = ["Good", "Bad", "Noise", "InverseSpike"]
DEFAULT_GROUND_TRUTH = ["PV+", "NOS1+", "GAT1+", "SST+", "Axoaxonic", "Cell type A"]


@dataclass
class ExplorerSettings:
    """
    User preferences consumed by the engine.

    - cell_types: ordered class names; new classes may be added at runtime
    - deep_superficial: closed set of laminar assignments
    - tags / ground_truth: suggested values (sets are open-ended)
    - autosave_frequency: export every Nth classification step, 0 = off
    - autosave_var_name: stem of the autosave export
    - mono_syn_display: initial connectivity display mode label
    - max_hops: traversal bound for upstream/downstream closure
    - history_limit: keep at most this many undo steps after an autosave (None = unbounded)
    - plot_x_data / plot_y_data: default metrics on the connectivity scatter axes
    """

    cell_types: List[str] = field(default_factory=lambda: list(DEFAULT_CELL_TYPES))
    deep_superficial: List[str] = field(default_factory=lambda: list(DEFAULT_DEEP_SUPERFICIAL))
    tags: List[str] = field(default_factory=lambda: list(DEFAULT_TAGS))
    ground_truth: List[str] = field(default_factory=lambda: list(DEFAULT_GROUND_TRUTH))

    autosave_frequency: int = 6
    autosave_var_name: str = "cell_metrics"

    mono_syn_display: str = "Selected"
    max_hops: int = 10
    history_limit: Optional[int] = None

    plot_x_data: str = "firing_rate"
    plot_y_data: str = "peak_voltage"

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

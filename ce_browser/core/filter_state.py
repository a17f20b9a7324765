from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass
class FilterState:
    """
    Represents the current values of every filter predicate.

    Fields:

    - cell_types: classes to include; None means every class
    - tag_include: keep only cells carrying at least one of these tags (if non-empty)
    - tag_exclude: drop cells carrying any of these tags
    - text: free-text query, e.g. ``.firingRate > 5 & pyramidal | CA1``
    - group_attribute / group_values: keep cells whose attribute is one of the values
      (ignored while compare_mode is on)

    - compare_mode: if True, every cell stays visible and is relabelled
      1 (outside the filtered set) or 2 (inside it)
    """

    cell_types: Optional[List[str]] = None
    tag_include: List[str] = field(default_factory=list)
    tag_exclude: List[str] = field(default_factory=list)
    text: str = ""

    group_attribute: Optional[str] = None
    group_values: List[Any] = field(default_factory=list)

    compare_mode: bool = False

    @property
    def group_active(self) -> bool:
        return self.group_attribute is not None and not self.compare_mode

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FilterState:
        cell_types = data.get("cell_types")
        return cls(
            cell_types=list(cell_types) if cell_types is not None else None,
            tag_include=list(data.get("tag_include", [])),
            tag_exclude=list(data.get("tag_exclude", [])),
            text=str(data.get("text") or ""),
            group_attribute=data.get("group_attribute"),
            group_values=list(data.get("group_values", [])),
            compare_mode=bool(data.get("compare_mode", False)),
        )

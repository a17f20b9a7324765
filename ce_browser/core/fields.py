from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from ce_browser.validation.errors import ValidationError

if TYPE_CHECKING:
    from ce_browser.config.model import ExplorerSettings

logger = logging.getLogger(__name__)


# Column names of the mutable classification fields
CELL_TYPE = "cell_type"
TAGS = "tags"
BRAIN_REGION = "brain_region"
LABEL = "label"
DEEP_SUPERFICIAL = "deep_superficial"
GROUND_TRUTH = "ground_truth"

# Immutable identity columns
BATCH_ID = "batch_id"
UID = "uid"

IDENTITY_FIELDS: Tuple[str, ...] = (BATCH_ID, UID)
CLASSIFICATION_FIELDS: Tuple[str, ...] = (
    CELL_TYPE,
    TAGS,
    BRAIN_REGION,
    LABEL,
    DEEP_SUPERFICIAL,
    GROUND_TRUTH,
)
SET_FIELDS: Tuple[str, ...] = (TAGS, GROUND_TRUTH)


class FieldKind(str, Enum):
    CATEGORICAL = "categorical"
    TEXT = "text"
    SET = "set"


@dataclass
class FieldSpec:
    """
    Declares one named cell attribute and how raw values are coerced into it.

    - name: column name in the CellStore
    - kind: categorical (single value), text (free text) or set (of strings)
    - mutable: whether ClassificationState may write it
    - choices: allowed values for a categorical field
    - open_choices: if True, unseen categorical values are rejected until
      added with FieldRegistry.add_choice (cell types); if False the
      choices are a hard, closed list
    """

    name: str
    kind: FieldKind
    mutable: bool = True
    choices: List[str] = field(default_factory=list)
    open_choices: bool = False

    def normalise(self, value: Any) -> Any:
        """
        Coerce a raw value into the stored representation.

        Raises:
            ValidationError: if the value cannot be represented by this field
        """
        if self.kind is FieldKind.SET:
            if value is None:
                return frozenset()
            if isinstance(value, str):
                return frozenset([value])
            try:
                return frozenset(str(v) for v in value)
            except TypeError:
                raise ValidationError.single(
                    "FIELD_VALUE_TYPE", f"'{self.name}' expects a set of strings, got {type(value).__name__}"
                )

        if value is None or isinstance(value, (set, frozenset, list, tuple, dict)):
            raise ValidationError.single(
                "FIELD_VALUE_TYPE", f"'{self.name}' expects a single value, got {value!r}"
            )

        value = str(value)
        if self.kind is FieldKind.CATEGORICAL and self.choices and value not in self.choices:
            raise ValidationError.single(
                "FIELD_VALUE_CHOICE",
                f"'{value}' is not a valid {self.name} (expected one of {', '.join(self.choices)})",
            )
        return value


class FieldRegistry:
    """
    Typed attribute registry: maps a field name to its FieldSpec.

    Every write through ClassificationState is resolved here first, so an
    unknown or read-only field is reported deterministically as a
    ValidationError instead of surfacing as a lookup failure deep in pandas.
    """

    def __init__(self):
        self._specs: Dict[str, FieldSpec] = {}

    def register(self, spec: FieldSpec) -> None:
        """
        Raises:
            ValueError: if a field with the same name already exists
        """
        if spec.name in self._specs:
            raise ValueError(f"Field '{spec.name}' already registered")
        if spec.kind is not FieldKind.CATEGORICAL and spec.choices:
            raise ValueError(f"Field '{spec.name}' is not categorical and cannot declare choices")
        self._specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def get(self, name: str) -> FieldSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ValidationError.single("FIELD_UNKNOWN", f"Unknown field '{name}'")

    def require_mutable(self, name: str) -> FieldSpec:
        spec = self.get(name)
        if not spec.mutable:
            raise ValidationError.single("FIELD_READ_ONLY", f"Field '{name}' is read-only")
        return spec

    def add_choice(self, name: str, value: str) -> None:
        """
        Extend the choice list of an open categorical field (e.g. a new cell type).
        """
        spec = self.get(name)
        if spec.kind is not FieldKind.CATEGORICAL or not spec.open_choices:
            raise ValidationError.single("FIELD_CHOICES_CLOSED", f"Field '{name}' does not accept new values")
        if value not in spec.choices:
            spec.choices.append(value)
            logger.info("Added choice to field", extra={"field": name, "value": value})

    def names(self, *, mutable_only: bool = False) -> List[str]:
        return [n for n, s in self._specs.items() if s.mutable or not mutable_only]

    def specs(self) -> Iterable[FieldSpec]:
        return self._specs.values()


def default_registry(
    settings: Optional["ExplorerSettings"] = None,
    extra_cell_types: Iterable[str] = (),
    extra_deep_superficial: Iterable[str] = (),
) -> FieldRegistry:
    """
    Build the registry for the standard cell attributes.

    Cell types present in the loaded data but missing from the preferences are
    appended, and so are laminar values found in the data (the user would
    otherwise be unable to keep them).
    """
    from ce_browser.config.model import ExplorerSettings

    settings = settings or ExplorerSettings()

    cell_types = list(settings.cell_types)
    for ct in extra_cell_types:
        if ct not in cell_types:
            cell_types.append(ct)

    deep_superficial = list(settings.deep_superficial)
    for ds in extra_deep_superficial:
        if ds not in deep_superficial:
            deep_superficial.append(ds)

    registry = FieldRegistry()
    registry.register(FieldSpec(BATCH_ID, FieldKind.TEXT, mutable=False))
    registry.register(FieldSpec(UID, FieldKind.TEXT, mutable=False))
    registry.register(FieldSpec(CELL_TYPE, FieldKind.CATEGORICAL, choices=cell_types, open_choices=True))
    registry.register(FieldSpec(TAGS, FieldKind.SET))
    registry.register(FieldSpec(BRAIN_REGION, FieldKind.TEXT))
    registry.register(FieldSpec(LABEL, FieldKind.TEXT))
    registry.register(FieldSpec(DEEP_SUPERFICIAL, FieldKind.CATEGORICAL, choices=deep_superficial))
    registry.register(FieldSpec(GROUND_TRUTH, FieldKind.SET))
    return registry

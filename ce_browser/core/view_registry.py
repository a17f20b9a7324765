from __future__ import annotations
from typing import Dict, List, Type, TYPE_CHECKING

from .base_view import BaseView

if TYPE_CHECKING:
    from .context import ExplorerContext


class ViewRegistry:
    """
    Registry for view classes so a host UI can build its tabs dynamically.

    Design Notes:
    - Stores subclasses of {@link BaseView}, not instances; each view is
      created on demand against an ExplorerContext
    - Enforces:
        * only {@link BaseView} subclasses can be registered
        * each view 'id' is unique across the registry
    """

    def __init__(self):
        self._views: Dict[str, Type[BaseView]] = {}

    def register(self, view_cls: Type[BaseView]) -> None:
        """
        Register a {@link BaseView} subclass with a unique 'id'

        Raises:
            TypeError: if view_cls is not a subclass of {@link BaseView}
            ValueError: if a view with same 'id' already exists
        """
        if not isinstance(view_cls, type) or not issubclass(view_cls, BaseView):
            raise TypeError(f"View '{getattr(view_cls, 'id', view_cls)}' must be a subclass of BaseView")

        if view_cls.id in self._views:
            raise ValueError(f"View '{view_cls.id}' already registered")

        self._views[view_cls.id] = view_cls

    def create(self, view_id: str, context: "ExplorerContext") -> BaseView:
        """
        Instantiate the view registered under view_id for the given context

        Raises:
            KeyError: if no view with the given id exists in the registry
        """
        try:
            cls = self._views[view_id]
        except KeyError:
            raise KeyError(f"View '{view_id}' not found")
        return cls(context)

    def all_classes(self) -> List[Type[BaseView]]:
        return list(self._views.values())

"""Application descriptors.

An application is any object (module, class or instance) that exposes
``update(message, model)``. ``init(args)``, ``view(model)`` and
``app_name()`` are optional; which ones exist is checked once when the
descriptor is built.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from lumen.utils.errors import ConfigurationError


@runtime_checkable
class Application(Protocol):
    def update(self, message: Any, model: Any) -> Any: ...


def is_model(value: Any) -> bool:
    """Return whether ``value`` has a shape accepted as an application model."""

    if isinstance(value, Mapping):
        return True
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def is_command_list(value: Any) -> bool:
    return isinstance(value, (list, tuple))


@dataclass(frozen=True)
class ApplicationSpec:
    """Capability check of an application object, done once at startup."""

    app: Any
    has_init: bool
    has_view: bool
    has_app_name: bool

    @classmethod
    def from_object(cls, app: Any) -> "ApplicationSpec":
        if isinstance(app, ApplicationSpec):
            return app
        if not isinstance(app, Application) or not callable(app.update):
            raise ConfigurationError(f"{app!r} does not define update(message, model)")
        return cls(
            app=app,
            has_init=callable(getattr(app, "init", None)),
            has_view=callable(getattr(app, "view", None)),
            has_app_name=callable(getattr(app, "app_name", None)),
        )

    @property
    def default_name(self) -> str:
        if self.has_app_name:
            return str(self.app.app_name())
        target = self.app if isinstance(self.app, type) else type(self.app)
        if target.__name__ == "module":
            return str(getattr(self.app, "__name__", "app"))
        return target.__name__

    def init(self, args: Mapping[str, Any]) -> Any:
        return self.app.init(args) if self.has_init else {}

    def update(self, message: Any, model: Any) -> Any:
        return self.app.update(message, model)

    def view(self, model: Any) -> Any:
        return self.app.view(model) if self.has_view else None


InitResult = Tuple[Optional[Any], List[Any]]


def normalize_init_result(result: Any) -> Optional[InitResult]:
    """Split an ``init`` return value into ``(model, commands)``.

    Accepts a bare model or a ``(model, commands)`` pair; anything else
    yields ``None``.
    """

    if isinstance(result, tuple) and len(result) == 2 and is_model(result[0]) and is_command_list(result[1]):
        return result[0], list(result[1])
    if is_model(result):
        return result, []
    return None


def model_value(model: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a mapping model or attribute of a dataclass model."""

    if isinstance(model, Mapping):
        return model.get(key, default)
    return getattr(model, key, default)


__all__ = [
    "Application",
    "ApplicationSpec",
    "is_model",
    "is_command_list",
    "normalize_init_result",
    "model_value",
]

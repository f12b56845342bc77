from __future__ import annotations

from typing import Any

_current: Any = None


def install_services(container: Any) -> Any:
    """Make `container` the process-wide service container."""
    global _current
    _current = container
    return container


def current_services() -> Any:
    if _current is None:
        raise RuntimeError("No services installed. Call install_services(container) first.")
    return _current


def uninstall_services() -> None:
    global _current
    _current = None

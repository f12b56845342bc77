# redirect runtime service imports for clean imports

from copychu.core.runtime.runtime_services import (
    current_services,
    install_services,
    uninstall_services,
)

__all__ = [
    "install_services",
    "current_services",
    "uninstall_services",
]

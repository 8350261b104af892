"""
Endpoint handlers for the SpectraBox update API.

Modules:
- update: version, update check, update execution and update status
"""

from spectrabox_updater.tools.update import (
    HandlerResponse,
    get_update_handlers,
    handle_update_check,
    handle_update_execute,
    handle_update_status,
    handle_version,
)

__all__ = [
    "HandlerResponse",
    "get_update_handlers",
    "handle_update_check",
    "handle_update_execute",
    "handle_update_status",
    "handle_version",
]

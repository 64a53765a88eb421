"""HTTP control API."""

from devicecore.api.control_server import ControlServer

__all__ = ["ControlServer"]

from typing import Dict, Optional, Type

from ..isolation import Backend
from .base import Driver, DriverResult, RunContext
from .container import DockerDriver, default_container_image
from .local import LocalDriver
from .multiplexer import ScreenDriver, TmuxDriver
from .remote import SshDriver

DRIVERS: Dict[Backend, Type[Driver]] = {
    Backend.NONE: LocalDriver,
    Backend.SCREEN: ScreenDriver,
    Backend.TMUX: TmuxDriver,
    Backend.DOCKER: DockerDriver,
    Backend.SSH: SshDriver,
}


def driver_registry(overrides: Optional[Dict[Backend, Driver]] = None) -> Dict[Backend, Driver]:
    registry: Dict[Backend, Driver] = {backend: cls() for backend, cls in DRIVERS.items()}
    if overrides:
        registry.update(overrides)
    return registry


__all__ = [
    "DRIVERS",
    "Driver",
    "DriverResult",
    "RunContext",
    "DockerDriver",
    "LocalDriver",
    "ScreenDriver",
    "SshDriver",
    "TmuxDriver",
    "default_container_image",
    "driver_registry",
]

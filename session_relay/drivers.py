"""Driver protocol and registry of driver factories.

A driver owns one messaging connection and its local credential storage.
It pushes events through callbacks registered with ``on`` and accepts the
``initialize`` / ``send_message`` / ``destroy`` commands.
"""

from collections.abc import Callable
from typing import Any, Awaitable, Optional, Protocol

DRIVER_EVENTS = ("qr", "ready", "disconnected", "message")

EventCallback = Callable[..., Any]


class Driver(Protocol):
    """Command and event surface of a session driver."""

    def on(self, event: str, callback: EventCallback) -> None: ...

    def initialize(self) -> Awaitable[None]: ...

    def send_message(self, target: str, content: Any) -> Awaitable[Any]: ...

    def destroy(self) -> Awaitable[None]: ...


DriverFactory = Callable[[str], Driver]


class DriverRegistry:
    """Registry for driver factories."""

    def __init__(self):
        self._factories: dict[str, DriverFactory] = {}

    def driver(self, name: str):
        """
        Decorator to register a driver factory.

        Usage:
            @registry.driver("whatsapp-web")
            def make_driver(session_id):
                return WhatsAppDriver(session_id)
        """

        def decorator(func: DriverFactory):
            self._factories[name] = func
            return func

        return decorator

    def get_factory(self, name: str) -> Optional[DriverFactory]:
        """Get a driver factory by name."""
        return self._factories.get(name)

    def all_factories(self) -> dict[str, DriverFactory]:
        """Get all registered driver factories."""
        return self._factories.copy()


# Global registry instance
driver_registry = DriverRegistry()

"""Live backing-service lookup by owning-service name."""

from __future__ import annotations

from collections.abc import Iterable

from entitygate.store.protocols import BackingService


class ServiceRegistry:
    """Maps service names to live backing services.

    Lookups try an exact name first, then a case-insensitive match, so a
    descriptor that says ``salesservice`` still finds ``SalesService``.
    """

    def __init__(self, services: Iterable[BackingService] = ()) -> None:
        self._services: dict[str, BackingService] = {}
        for service in services:
            self.register(service)

    def register(self, service: BackingService) -> None:
        if service.name in self._services:
            raise ValueError(f"Service '{service.name}' is already registered")
        self._services[service.name] = service

    def resolve(self, name: str) -> BackingService | None:
        service = self._services.get(name)
        if service is not None:
            return service
        lowered = name.lower()
        for registered, candidate in self._services.items():
            if registered.lower() == lowered:
                return candidate
        return None

    def names(self) -> list[str]:
        return sorted(self._services)

    def __len__(self) -> int:
        return len(self._services)

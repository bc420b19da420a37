from __future__ import annotations

from typing import Any, Iterator

import pytest

from homedash.integrations.backend.contracts import (
    BackendError,
    BackendErrorKind,
    Entity,
    entity_from_state,
    filter_entities,
)
from homedash.services import Services, build_services


class StubBackend:
    """In-memory stand-in for Home Assistant."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.states: dict[str, dict[str, Any]] = {}
        self.failures: dict[tuple[str, str], BackendErrorKind] = {}

    def set_state(self, entity_id: str, state: str, **attributes: Any) -> None:
        self.states[entity_id] = {"entity_id": entity_id, "state": state, "attributes": attributes}

    def fail(self, domain: str, service: str, kind: BackendErrorKind) -> None:
        self.failures[(domain, service)] = kind

    def call_service(self, domain: str, service: str, data: dict[str, Any]) -> Any:
        kind = self.failures.get((domain, service))
        if kind is not None:
            raise BackendError(kind, f"stub failure {domain}.{service}")
        self.calls.append((domain, service, dict(data)))
        return []

    def get_state(self, entity_id: str) -> Entity | None:
        item = self.states.get(entity_id)
        return entity_from_state(item) if item else None

    def search_entities(
        self,
        query: str | None = None,
        domains: list[str] | None = None,
        device_classes: list[str] | None = None,
        states: list[str] | None = None,
        limit: int = 20,
    ) -> list[Entity]:
        return filter_entities(
            [entity_from_state(item) for item in self.states.values()],
            query=query,
            domains=domains,
            device_classes=device_classes,
            states=states,
            limit=limit,
        )


@pytest.fixture
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def services(backend: StubBackend) -> Iterator[Services]:
    built = build_services(
        db_path=":memory:",
        backend=backend,
        timezone_name="UTC",
        default_enabled=True,
        workers=2,
        policy="coalesce",
    )
    yield built
    built.close()

from __future__ import annotations

from typing import Any

import pytest
import requests

from homedash.integrations.backend.contracts import BackendError, BackendErrorKind
from homedash.integrations.homeassistant.config import HomeAssistantConfig, RetryConfig
from homedash.integrations.homeassistant.rest_client import HomeAssistantRestClient, classify_status


class _Response:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = "" if body is None else str(body)

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no body")
        return self._body


class _Session:
    def __init__(self, responses: list[Any]) -> None:
        self.headers: dict[str, str] = {}
        self.requests: list[tuple[str, str, Any]] = []
        self._responses = list(responses)

    def request(self, method: str, url: str, *, json: Any = None, timeout: float | None = None) -> _Response:
        self.requests.append((method, url, json))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses: list[Any]) -> tuple[HomeAssistantRestClient, _Session]:
    config = HomeAssistantConfig(
        base_url="http://ha.local:8123",
        token="secret",
        retry=RetryConfig(max_attempts=3, base_delay_sec=0.0, max_delay_sec=0.0),
    )
    session = _Session(responses)
    return HomeAssistantRestClient(config, session=session), session


@pytest.mark.parametrize(
    ("status_code", "kind"),
    [
        (401, BackendErrorKind.UNAUTHORIZED),
        (403, BackendErrorKind.UNAUTHORIZED),
        (404, BackendErrorKind.NOT_FOUND),
        (400, BackendErrorKind.BAD_REQUEST),
        (500, BackendErrorKind.UNKNOWN),
    ],
)
def test_classify_status(status_code: int, kind: BackendErrorKind) -> None:
    assert classify_status(status_code) is kind


def test_session_carries_bearer_token() -> None:
    _, session = _client([])

    assert session.headers["Authorization"] == "Bearer secret"


def test_get_state_returns_none_for_unknown_entity() -> None:
    client, _ = _client([_Response(404)])

    assert client.get_state("light.nope") is None


def test_reads_are_retried_after_server_errors() -> None:
    client, session = _client([_Response(502, "bad"), requests.ConnectionError("down"), _Response(200, [{"entity_id": "light.a"}])])

    assert client.get_states() == [{"entity_id": "light.a"}]
    assert len(session.requests) == 3


def test_service_calls_are_not_retried() -> None:
    client, session = _client([_Response(500, "boom"), _Response(200, [])])

    with pytest.raises(BackendError) as exc_info:
        client.call_service("light", "turn_on", {"entity_id": "light.a"})

    assert exc_info.value.kind is BackendErrorKind.UNKNOWN
    assert exc_info.value.status_code == 500
    assert session.requests == [("POST", "http://ha.local:8123/api/services/light/turn_on", {"entity_id": "light.a"})]


def test_service_call_timeout_is_classified() -> None:
    client, _ = _client([requests.Timeout("slow")])

    with pytest.raises(BackendError) as exc_info:
        client.call_service("scene", "turn_on", {"entity_id": "scene.movie"})

    assert exc_info.value.kind is BackendErrorKind.TIMEOUT


def test_service_call_tolerates_empty_body() -> None:
    client, _ = _client([_Response(200)])

    assert client.call_service("scene", "turn_on", {"entity_id": "scene.movie"}) == []

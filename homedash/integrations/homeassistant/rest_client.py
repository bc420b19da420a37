from __future__ import annotations

import time
from typing import Any

import requests

from homedash.integrations.backend.contracts import BackendError, BackendErrorKind
from homedash.integrations.homeassistant.config import HomeAssistantConfig


def classify_status(status_code: int) -> BackendErrorKind:
    if status_code in {401, 403}:
        return BackendErrorKind.UNAUTHORIZED
    if status_code == 404:
        return BackendErrorKind.NOT_FOUND
    if status_code in {400, 422}:
        return BackendErrorKind.BAD_REQUEST
    return BackendErrorKind.UNKNOWN


class HomeAssistantRestClient:
    def __init__(self, config: HomeAssistantConfig, session: requests.Session | None = None) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {config.token}",
                "Content-Type": "application/json",
            }
        )

    def get_states(self) -> list[dict[str, Any]]:
        response = self._request("GET", "/api/states", retry=True)
        data = response.json()
        return data if isinstance(data, list) else []

    def get_state(self, entity_id: str) -> dict[str, Any] | None:
        response = self._request("GET", f"/api/states/{entity_id}", retry=True, allow_not_found=True)
        if response is None:
            return None
        data = response.json()
        return data if isinstance(data, dict) else None

    def call_service(
        self,
        domain: str,
        service: str,
        data: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        payload: dict[str, Any] = dict(data) if isinstance(data, dict) else {}
        response = self._request(
            "POST",
            f"/api/services/{domain}/{service}",
            json=payload,
            retry=False,
            timeout=timeout,
        )
        try:
            body = response.json()
        except ValueError:
            return []
        return body if isinstance(body, list) else []

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        retry: bool,
        allow_not_found: bool = False,
        timeout: float | None = None,
    ) -> requests.Response | None:
        url = f"{self._config.base_url}{path}"
        attempts = max(1, self._config.retry.max_attempts) if retry else 1
        request_timeout = timeout if timeout is not None else self._config.request_timeout_sec
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self._session.request(
                    method,
                    url,
                    json=json,
                    timeout=request_timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = exc
                if attempt >= attempts:
                    break
                self._sleep_before_retry(attempt)
                continue
            if allow_not_found and response.status_code == 404:
                return None
            if response.status_code in {429} or 500 <= response.status_code < 600:
                if attempt < attempts:
                    self._sleep_before_retry(attempt)
                    continue
            if response.status_code >= 400:
                raise BackendError(
                    classify_status(response.status_code),
                    f"Home Assistant request failed status={response.status_code} body={response.text[:200]}",
                    status_code=response.status_code,
                )
            return response
        raise BackendError(BackendErrorKind.TIMEOUT, f"Home Assistant unreachable: {last_error}")

    def _sleep_before_retry(self, attempt: int) -> None:
        delay = min(
            self._config.retry.max_delay_sec,
            self._config.retry.base_delay_sec * (2 ** max(0, attempt - 1)),
        )
        time.sleep(max(0.0, delay))

from __future__ import annotations

import random
import time
from typing import Any

import httpx


_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_EP_REPORT_ENGAGEMENT = "/get-report-engagement"


class BeaconProviderError(Exception):
    """Provider-level exception for Beacon API failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "invalid beacon api key" in message
            or "not found" in message
            or "missing beacon" in message
            or "unexpected beacon" in message
            or "non-json" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _retry_delay(attempt: int) -> float:
    delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
    return delay + random.uniform(0, delay * 0.2)


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(method=method, url=url, headers=headers, params=params)
        except httpx.HTTPError:
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            time.sleep(_retry_delay(attempt))
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            time.sleep(_retry_delay(attempt))
            continue
        return response

    assert response is not None
    return response


def _request_json(
    *,
    method: str,
    path: str,
    api_key: str | None,
    base_url: str | None,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
) -> Any:
    if not api_key:
        raise BeaconProviderError("Missing Beacon API key")
    if not base_url:
        raise BeaconProviderError("Missing Beacon API URL")

    # Beacon authenticates REST calls with the key as a query parameter.
    request_params = {"apiKey": api_key, **(params or {})}
    url = f"{base_url.rstrip('/')}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout_seconds=timeout_seconds,
            params=request_params,
        )
    except httpx.HTTPError as exc:
        raise BeaconProviderError(f"Beacon connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise BeaconProviderError("Invalid Beacon API key")
    if response.status_code == 404:
        raise BeaconProviderError(f"Beacon report not found: {path}")
    if response.status_code >= 400:
        raise BeaconProviderError(f"Beacon API returned HTTP {response.status_code}: {response.text[:200]}")

    try:
        return response.json()
    except ValueError as exc:
        raise BeaconProviderError("Beacon returned non-JSON response") from exc


def get_report_engagement(
    api_key: str | None,
    report_id: str,
    *,
    base_url: str | None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="GET",
        path=_EP_REPORT_ENGAGEMENT,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        params={"reportId": report_id},
    )
    if not isinstance(data, dict):
        raise BeaconProviderError("Unexpected Beacon report engagement response type")
    # Some deployments wrap the metrics in {"success": true, "data": {...}}.
    if isinstance(data.get("data"), dict):
        return data["data"]
    return data

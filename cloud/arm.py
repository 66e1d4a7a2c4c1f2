"""
Azure Resource Manager REST session.

Thin requests wrapper: bearer auth, api-version query parameter, error
translation into ArmError, and polling of long-running PUT operations via the
``Azure-AsyncOperation`` header.  Obtaining the bearer token is the caller's
job (e.g. ``az account get-access-token``); it is passed in as a string.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests

from cloud.base import CloudError

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"


class ArmError(CloudError):
    """Raised when Resource Manager returns an error response."""

    def __init__(self, status_code: int, body: dict) -> None:
        self.status_code = status_code
        self.body = body
        error = body.get("error", body)
        self.code = error.get("code", "unknown")
        self.message = error.get("message", str(body))
        super().__init__(f"ARM {status_code}: {self.code} — {self.message}")


class ArmSession:
    def __init__(
        self,
        token: str,
        subscription_id: str,
        endpoint: str = ARM_ENDPOINT,
        timeout: int = 60,
        operation_timeout: float = 1800.0,
        poll_interval: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.subscription_id = subscription_id
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "User-Agent": "gateway-cert-renewal/1.0",
        })

    def resource_path(self, resource_group: str, provider_path: str) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
            f"/providers/{provider_path}"
        )

    def get(self, path: str, api_version: str) -> dict:
        resp = self._request("GET", path, api_version)
        return _json_body(resp)

    def put(self, path: str, body: dict, api_version: str, wait: bool = True) -> dict:
        """PUT *body*; with ``wait`` block until the async operation finishes."""
        resp = self._request("PUT", path, api_version, json=body)
        operation_url = resp.headers.get("Azure-AsyncOperation")
        if wait and operation_url:
            self._wait_for_operation(operation_url)
        return _json_body(resp) if resp.content else {}

    # ── Internal ──────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, api_version: str, **kwargs: Any) -> requests.Response:
        url = f"{self.endpoint}{path}"
        try:
            resp = self._session.request(
                method, url, params={"api-version": api_version}, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise CloudError(f"{method} {url} failed: {exc}") from exc
        if not resp.ok:
            raise ArmError(resp.status_code, _error_body(resp))
        return resp

    def _wait_for_operation(self, operation_url: str) -> None:
        deadline = self._clock() + self.operation_timeout
        while True:
            try:
                resp = self._session.get(operation_url, timeout=self.timeout)
            except requests.RequestException as exc:
                raise CloudError(f"Polling {operation_url} failed: {exc}") from exc
            if not resp.ok:
                raise ArmError(resp.status_code, _error_body(resp))

            body = _json_body(resp)
            status: Optional[str] = body.get("status")
            if status == "Succeeded":
                return
            if status in ("Failed", "Canceled"):
                raise ArmError(resp.status_code, body)
            if self._clock() >= deadline:
                raise CloudError(
                    f"Operation {operation_url} still {status!r} after {self.operation_timeout:.0f}s"
                )
            logger.debug("Operation %s is %s — waiting %.0fs", operation_url, status, self.poll_interval)
            self._sleep(self.poll_interval)


def _error_body(resp: requests.Response) -> dict:
    try:
        return resp.json()
    except ValueError:
        return {"error": {"code": str(resp.status_code), "message": resp.text}}


def _json_body(resp: requests.Response) -> dict:
    try:
        return resp.json()
    except ValueError as exc:
        raise CloudError(
            f"{resp.request.method} {resp.url} returned a non-JSON body "
            f"(HTTP {resp.status_code}): {resp.text[:200]!r}"
        ) from exc

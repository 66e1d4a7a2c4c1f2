"""
ObjectStore backed by Azure Blob Storage (REST, bearer-token auth).

The container is expected to be the one the gateway's HTTP listener redirects
``/.well-known/acme-challenge/*`` to, e.g. ``$web`` of a static website.
"""
from __future__ import annotations

import logging
from urllib.parse import quote

import requests

from cloud.base import CloudError, ObjectStore

logger = logging.getLogger(__name__)

_STORAGE_API_VERSION = "2021-08-06"


class BlobObjectStore(ObjectStore):
    def __init__(self, account: str, token: str, timeout: int = 30, endpoint: str = "") -> None:
        self.account = account
        self.timeout = timeout
        self.endpoint = (endpoint or f"https://{account}.blob.core.windows.net").rstrip("/")
        self._session = requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "x-ms-version": _STORAGE_API_VERSION,
        })

    def _url(self, container: str, path: str) -> str:
        return f"{self.endpoint}/{quote(container, safe='$')}/{quote(path.lstrip('/'), safe='/')}"

    def put_object(self, container: str, path: str, data: bytes, content_type: str) -> None:
        url = self._url(container, path)
        try:
            resp = self._session.put(
                url,
                data=data,
                headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CloudError(f"PUT {url} failed: {exc}") from exc
        if resp.status_code not in (200, 201):
            raise CloudError(f"PUT {url} returned {resp.status_code}: {resp.text}")
        logger.debug("Uploaded %d bytes to %s", len(data), url)

    def delete_object(self, container: str, path: str) -> None:
        url = self._url(container, path)
        try:
            resp = self._session.delete(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise CloudError(f"DELETE {url} failed: {exc}") from exc
        if resp.status_code == 404:
            logger.debug("%s already gone", url)
            return
        if resp.status_code not in (200, 202):
            raise CloudError(f"DELETE {url} returned {resp.status_code}: {resp.text}")

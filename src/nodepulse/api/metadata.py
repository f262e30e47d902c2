"""REST client for static node metadata (disk enumeration)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from nodepulse.api.errors import ApiError, CredentialMissingError
from nodepulse.models.metadata import DiskList

if TYPE_CHECKING:
    from nodepulse.auth.token_store import CredentialProvider

logger = logging.getLogger(__name__)


class MetadataClient:
    """Thin async wrapper around the dashboard's REST metadata endpoints."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        *,
        path_prefix: str = "performance",
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials
        self._prefix = path_prefix.strip("/")
        self._timeout = timeout

    def _url(self, path: str) -> str:
        if self._prefix:
            return f"{self._base_url}/{self._prefix}/{path}"
        return f"{self._base_url}/{path}"

    async def _get(self, path: str) -> dict[str, Any]:
        token = self._credentials.get_credential()
        if not token:
            raise CredentialMissingError()

        url = self._url(path)
        logger.debug("GET %s", url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as exc:
            raise ApiError(f"Request to {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ApiError(
                f"GET {path} failed (HTTP {resp.status_code}): {resp.text}",
                status_code=resp.status_code,
            )
        try:
            data: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise ApiError(f"GET {path} returned invalid JSON") from exc
        return data

    async def list_disks(self, node_id: str) -> DiskList:
        """Return the disks attached to *node_id*."""
        data = await self._get(f"disk_list/{quote(node_id, safe='')}")
        return DiskList.model_validate(data)

"""
REST storage client for a Kubernetes-style API server.

Objects are addressed as /api/<version>/... for the core group and
/apis/<group>/<version>/... otherwise, with /namespaces/<ns>/ inserted for
namespaced objects. Apply-style writes use server-side apply patches.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from composite.errors import ServiceUnavailableError, error_for_status
from composite.kinds import GroupVersionKind
from composite.storage.apply import object_key, strip_server_metadata
from composite.storage.base import PatchType, StorageClient, format_label_selector

logger = logging.getLogger(__name__)


def default_plural(kind: str) -> str:
    """Guess the resource name of a kind, e.g. Ingress -> ingresses."""
    lower = kind.lower()
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return lower + "es"
    if lower.endswith("y") and lower[-2:-1] not in ("a", "e", "i", "o", "u"):
        return lower[:-1] + "ies"
    return lower + "s"


class HttpStorage(StorageClient):
    """Storage client speaking to an API server over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = 30,
        plurals: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.plurals = dict(plurals or {})
        self._session = session

    async def connect(self) -> None:
        if self._session is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            logger.info(f"Connected to API server at {self.base_url}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_connected(self) -> None:
        if self._session is None:
            raise RuntimeError(
                "Storage not connected. Call connect() before performing operations."
            )

    def _url(
        self,
        group: str,
        version: str,
        kind: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        prefix = f"/apis/{group}/{version}" if group else f"/api/{version}"
        plural = self.plurals.get(kind) or default_plural(kind)
        path = prefix
        if namespace:
            path += f"/namespaces/{quote(namespace, safe='')}"
        path += f"/{plural}"
        if name:
            path += f"/{quote(name, safe='')}"
        return self.base_url + path

    def _object_url(self, data: Dict[str, Any], with_name: bool = True) -> str:
        gvk = GroupVersionKind.from_api_version(
            data.get("apiVersion", ""), data.get("kind", "")
        )
        _, _, namespace, name = object_key(data)
        return self._url(
            gvk.group, gvk.version, gvk.kind, namespace, name if with_name else None
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        content_type: str = "application/json",
    ) -> Dict[str, Any]:
        self._ensure_connected()
        data = json.dumps(body) if body is not None else None
        headers = {"Content-Type": content_type} if data is not None else None

        try:
            async with self._session.request(
                method, url, params=params or None, data=data, headers=headers
            ) as resp:
                if resp.status >= 400:
                    raise await self._error(resp)
                if resp.status == 204:
                    return {}
                return await resp.json()
        except aiohttp.ClientError as e:
            raise ServiceUnavailableError(f"{method} {url} failed: {e}") from e

    @staticmethod
    async def _error(resp: aiohttp.ClientResponse) -> Exception:
        message = f"HTTP {resp.status}"
        reason = None
        try:
            status = await resp.json()
            message = status.get("message") or message
            reason = status.get("reason")
        except (aiohttp.ContentTypeError, ValueError):
            pass
        return error_for_status(resp.status, message, reason)

    @staticmethod
    def _write_params(
        dry_run: bool,
        field_manager: Optional[str] = None,
        force: bool = False,
    ) -> Dict[str, str]:
        params = {}
        if dry_run:
            params["dryRun"] = "All"
        if field_manager:
            params["fieldManager"] = field_manager
        if force:
            params["force"] = "true"
        return params

    # ==================== Backend Hooks ====================

    async def _get(
        self, gvk: GroupVersionKind, namespace: str, name: str
    ) -> Dict[str, Any]:
        url = self._url(gvk.group, gvk.version, gvk.kind, namespace, name)
        return await self._request("GET", url)

    async def _list(
        self,
        gvk: GroupVersionKind,
        namespace: Optional[str],
        label_selector: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        url = self._url(gvk.group, gvk.version, gvk.kind, namespace)
        params = {}
        if label_selector:
            params["labelSelector"] = format_label_selector(label_selector)
        result = await self._request("GET", url, params=params)
        return result.get("items") or []

    async def _create(self, data: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        url = self._object_url(data, with_name=False)
        return await self._request(
            "POST", url, params=self._write_params(dry_run), body=data
        )

    async def _update(
        self, data: Dict[str, Any], field_manager: str, dry_run: bool
    ) -> Dict[str, Any]:
        url = self._object_url(data)
        return await self._request(
            "PUT", url, params=self._write_params(dry_run, field_manager), body=data
        )

    async def _patch(
        self,
        data: Dict[str, Any],
        patch_type: PatchType,
        field_manager: str,
        force: bool,
        dry_run: bool,
        body: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        url = self._object_url(data)
        if patch_type is PatchType.APPLY:
            params = self._write_params(dry_run, field_manager, force)
            payload = strip_server_metadata(data)
        else:
            params = self._write_params(dry_run, field_manager)
            payload = body or {}
        return await self._request(
            "PATCH", url, params=params, body=payload, content_type=patch_type.value
        )

    async def _delete(
        self, gvk: GroupVersionKind, namespace: str, name: str, dry_run: bool
    ) -> None:
        url = self._url(gvk.group, gvk.version, gvk.kind, namespace, name)
        await self._request("DELETE", url, params=self._write_params(dry_run))

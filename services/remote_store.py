"""Remote store contract and the HTTP adapter used in production.

The engine only relies on :class:`RemoteStore`. A send either returns or
raises one of the classified errors below; anything else is treated as a
transient failure by the engine.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx

from core.settings import REMOTE, RemoteSettings
from datetime_utils import to_rfc3339_utc
from models.pending_op import OperationKind
from services.pending_ops_queue import PendingOperation


RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}

logger = logging.getLogger("veloce.sync.remote")


class SyncError(Exception):
    """Base class for classified remote failures."""

    permanent = False

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TransientSyncError(SyncError):
    """Retryable failure: timeouts, dropped connections, 5xx, throttling."""

    def __init__(self, message: str, *, status: Optional[int] = None, network: bool = False) -> None:
        super().__init__(message, status=status)
        self.network = network


class PermanentSyncError(SyncError):
    """Rejected by the remote (validation, conflict, authorization)."""

    permanent = True


class RemoteStore(Protocol):
    async def send(self, operation: PendingOperation) -> None:
        ...

    async def fetch_changes(self, since: Optional[datetime]) -> Dict[str, List[Dict[str, Any]]]:
        ...

    async def check_health(self) -> bool:
        ...


def classify_status(status: int, *, kind: Optional[str] = None) -> Optional[SyncError]:
    """Map an HTTP status to ``None`` (success) or a classified error."""

    if 200 <= status < 300:
        return None
    if status == 404 and kind == OperationKind.DELETE.value:
        # Already gone remotely; the delete has the intended effect.
        return None
    if status in RETRYABLE_STATUS or status >= 500:
        return TransientSyncError(f"remote returned {status}", status=status)
    return PermanentSyncError(f"remote rejected change ({status})", status=status)


class HttpRemoteStore:
    """PostgREST-style remote (the hosted backend exposes ``/rest/v1/<table>``)."""

    def __init__(
        self,
        settings: Optional[RemoteSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or REMOTE
        self.tables = dict(self.settings.tables)
        self._client = client
        self._owns_client = client is None

    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.settings.api_key:
            headers["apikey"] = self.settings.api_key
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.settings.configured:
                raise PermanentSyncError("Remote base URL is not configured (set VELOCE_REMOTE_URL)")
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url.rstrip("/"),
                headers=self._headers(),
                timeout=httpx.Timeout(
                    self.settings.request_timeout_sec,
                    connect=self.settings.connect_timeout_sec,
                ),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _table(self, entity_type: str) -> str:
        try:
            return self.tables[entity_type]
        except KeyError:
            raise PermanentSyncError(f"No remote table for entity type {entity_type!r}") from None

    # ------------------------------------------------------------------
    async def send(self, operation: PendingOperation) -> None:
        table = self._table(operation.entity_type)
        path = f"/rest/v1/{table}"
        headers = {"Idempotency-Key": operation.uid}
        params = {"id": f"eq.{operation.entity_id}"}
        body = dict(operation.payload)

        if operation.kind == OperationKind.CREATE.value:
            body.setdefault("id", operation.entity_id)
            headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
            request = ("POST", path, None, body)
        elif operation.kind == OperationKind.UPDATE.value:
            headers["Prefer"] = "return=minimal"
            request = ("PATCH", path, params, body)
        elif operation.kind == OperationKind.DELETE.value:
            request = ("DELETE", path, params, None)
        else:
            raise PermanentSyncError(f"Unsupported operation kind {operation.kind!r}")

        method, url, query, payload = request
        response = await self._request(method, url, params=query, json=payload, headers=headers)
        error = classify_status(response.status_code, kind=operation.kind)
        if error is not None:
            logger.warning(
                "%s %s for op %s failed with %s", method, url, operation.uid, response.status_code
            )
            raise error

    async def fetch_changes(self, since: Optional[datetime]) -> Dict[str, List[Dict[str, Any]]]:
        changes: Dict[str, List[Dict[str, Any]]] = {}
        for entity_type, table in self.tables.items():
            params = {"select": "*", "order": "updated_at.asc"}
            if since is not None:
                params["updated_at"] = f"gt.{to_rfc3339_utc(since)}"
            response = await self._request("GET", f"/rest/v1/{table}", params=params)
            error = classify_status(response.status_code)
            if error is not None:
                raise error
            rows = response.json()
            if rows:
                changes[entity_type] = list(rows)
        return changes

    async def check_health(self) -> bool:
        try:
            response = await self._request("GET", self.settings.health_path)
        except TransientSyncError as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return response.status_code == 200

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientSyncError(f"{method} {url} failed: {exc}", network=True) from exc


__all__ = [
    "HttpRemoteStore",
    "PermanentSyncError",
    "RemoteStore",
    "SyncError",
    "TransientSyncError",
    "classify_status",
]

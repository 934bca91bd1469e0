"""Library operations over HTTP, against a running refman server.

Each method issues exactly one request to the background server. There is
no caching and no retry: a transport failure surfaces as ``TransportError``
and the command fails rather than falling back to local mode.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import quote

import aiohttp

from refman.core.interface import (
    CiteOptions,
    CiteResult,
    ListOptions,
    OnIdCollision,
    PageResult,
    RemoveResult,
    SearchOptions,
    UpdateResult,
)
from refman.core.reference import CslItem
from refman.errors import InvalidInputError, ServerError, TransportError

logger = logging.getLogger(__name__)


class ServerClient:
    """``LibraryOperations`` backed by a running refman server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, body: object = None) -> tuple[int, object]:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=body) as resp:
                status = resp.status
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot reach refman server at {self.base_url}: {e}") from e

        if status >= 500:
            message = data.get("error") if isinstance(data, dict) else None
            kind = data.get("kind", "internal") if isinstance(data, dict) else "internal"
            raise ServerError(message or f"Server returned HTTP {status}", status=status, kind=kind)
        if status == 400:
            message = data.get("error") if isinstance(data, dict) else None
            raise InvalidInputError(message or "Server rejected the request")
        logger.debug("%s %s -> %d", method, path, status)
        return status, data

    @staticmethod
    def _ref_path(identifier: str, by_uuid: bool) -> str:
        return f"/api/references/{'uuid' if by_uuid else 'id'}/{quote(identifier, safe='')}"

    def _unexpected(self, status: int, path: str) -> ServerError:
        return ServerError(f"Unexpected HTTP {status} from {path}", status=status)

    @staticmethod
    def _has_kind(data: object, kind: str) -> bool:
        # A bare 404 from something other than refman carries no kind
        return isinstance(data, dict) and data.get("kind") == kind

    # ── Queries ──────────────────────────────────────────────

    async def find(self, identifier: str, *, by_uuid: bool = False) -> CslItem | None:
        path = self._ref_path(identifier, by_uuid)
        status, data = await self._request("GET", path)
        if status == 404 and self._has_kind(data, "not_found"):
            return None
        if status != 200:
            raise self._unexpected(status, path)
        return data

    async def get_all(self) -> list[CslItem]:
        status, data = await self._request("GET", "/api/references")
        if status != 200:
            raise self._unexpected(status, "/api/references")
        return list(data or [])

    # ── Mutations ────────────────────────────────────────────

    async def add(self, item: CslItem) -> CslItem:
        status, data = await self._request("POST", "/api/references", item)
        if status not in (200, 201):
            raise self._unexpected(status, "/api/references")
        return data

    async def update(
        self,
        identifier: str,
        updates: CslItem,
        *,
        by_uuid: bool = False,
        on_id_collision: OnIdCollision = "fail",
    ) -> UpdateResult:
        path = self._ref_path(identifier, by_uuid)
        status, data = await self._request(
            "PUT", path, {"updates": updates, "onIdCollision": on_id_collision}
        )
        if status == 404 and self._has_kind(data, "not_found"):
            return UpdateResult(updated=False)
        if status == 409 and self._has_kind(data, "id_collision"):
            return UpdateResult(updated=False, id_collision=True)
        if status != 200:
            raise self._unexpected(status, path)
        return UpdateResult.from_dict(data)

    async def remove(self, identifier: str, *, by_uuid: bool = False) -> RemoveResult:
        path = self._ref_path(identifier, by_uuid)
        status, data = await self._request("DELETE", path)
        if status == 404 and self._has_kind(data, "not_found"):
            return RemoveResult(removed=False)
        if status != 200:
            raise self._unexpected(status, path)
        return RemoveResult.from_dict(data)

    async def save(self) -> None:
        # The server persists each mutation before answering
        return None

    # ── Derived reads ────────────────────────────────────────

    async def _post_page(self, path: str, body: dict) -> PageResult:
        status, data = await self._request("POST", path, body)
        if status != 200:
            raise self._unexpected(status, path)
        return PageResult.from_dict(data)

    async def list(self, options: ListOptions | None = None) -> PageResult:
        return await self._post_page("/api/list", (options or ListOptions()).to_dict())

    async def search(self, options: SearchOptions) -> PageResult:
        return await self._post_page("/api/search", options.to_dict())

    async def cite(self, options: CiteOptions) -> CiteResult:
        status, data = await self._request("POST", "/api/cite", options.to_dict())
        if status != 200:
            raise self._unexpected(status, "/api/cite")
        return CiteResult.from_dict(data)

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

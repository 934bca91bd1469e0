"""HTTP surface of the background server.

One ``Library`` is held in memory and every API request goes through a
single ``asyncio.Lock``, so requests take effect one at a time in arrival
order. Request bodies are read before the lock is taken; inside it there are
no suspension points between the mutation and the write to disk.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable

from aiohttp import web

from refman.config import CitationConfig
from refman.core.interface import CiteOptions, ListOptions, SearchOptions
from refman.core.library import Library
from refman.errors import InternalError, InvalidInputError, PersistenceError, UserInputError
from refman.local import LocalLibrary

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_response(status: int, message: str, kind: str, **extra) -> web.Response:
    return web.json_response({"error": message, "kind": kind, **extra}, status=status)


class LibraryServer:
    """aiohttp application around a single in-memory library."""

    def __init__(self, library: Library, citation: CitationConfig | None = None) -> None:
        self.library = LocalLibrary(library, citation)
        self.read_only = False
        self.in_flight = 0
        self.last_activity = time.monotonic()
        self._lock = asyncio.Lock()
        self.app = self._build_app()

    @property
    def store(self) -> Library:
        return self.library.library

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._track_activity, self._error_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_get("/api/references", self._get_all)
        app.router.add_post("/api/references", self._add)
        app.router.add_get("/api/references/{by}/{identifier}", self._find)
        app.router.add_put("/api/references/{by}/{identifier}", self._update)
        app.router.add_delete("/api/references/{by}/{identifier}", self._remove)
        app.router.add_post("/api/save", self._save)
        app.router.add_post("/api/list", self._list)
        app.router.add_post("/api/search", self._search)
        app.router.add_post("/api/cite", self._cite)
        return app

    # ── Middleware ───────────────────────────────────────────

    @web.middleware
    async def _track_activity(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        self.in_flight += 1
        try:
            return await handler(request)
        finally:
            self.in_flight -= 1
            self.last_activity = time.monotonic()

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except PersistenceError as e:
            return error_response(503, str(e), "persistence")
        except UserInputError as e:
            return error_response(400, str(e), "invalid_input")
        except ValueError as e:
            return error_response(400, str(e), "invalid_input")
        except Exception as e:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return error_response(500, str(e) or type(e).__name__, "internal")

    # ── Helpers ──────────────────────────────────────────────

    @staticmethod
    async def _json_object(request: web.Request) -> dict:
        try:
            body = await request.json()
        except ValueError as e:
            raise InvalidInputError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise InvalidInputError("Request body must be a JSON object")
        return body

    @staticmethod
    def _by_uuid(request: web.Request) -> bool:
        by = request.match_info["by"]
        if by not in ("id", "uuid"):
            raise InvalidInputError(f"Unknown identifier kind: {by}")
        return by == "uuid"

    def _refresh(self) -> None:
        """Pick up edits made to the file by other processes. Caller holds the lock."""
        try:
            self.store.reload_if_changed()
        except (OSError, UserInputError) as e:
            raise InternalError(f"Library file changed on disk and could not be re-read: {e}") from e

    def _check_writable(self) -> None:
        if self.read_only:
            raise PersistenceError(
                "Server is read-only after a failed write; restart it once the disk is healthy"
            )

    async def _mutate(self, operation: Callable[[], Awaitable]):
        """Run one mutation under the lock; a failed write latches read-only mode."""
        async with self._lock:
            self._check_writable()
            self._refresh()
            try:
                return await operation()
            except PersistenceError:
                self.read_only = True
                logger.error("Write to %s failed; server is now read-only", self.store.path)
                raise

    # ── Handlers ─────────────────────────────────────────────

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "pid": os.getpid(), "library": str(self.store.path)}
        )

    async def _get_all(self, request: web.Request) -> web.Response:
        async with self._lock:
            self._refresh()
            return web.json_response(await self.library.get_all())

    async def _find(self, request: web.Request) -> web.Response:
        by_uuid = self._by_uuid(request)
        identifier = request.match_info["identifier"]
        async with self._lock:
            self._refresh()
            item = await self.library.find(identifier, by_uuid=by_uuid)
        if item is None:
            return error_response(404, f"Reference '{identifier}' not found", "not_found")
        return web.json_response(item)

    async def _add(self, request: web.Request) -> web.Response:
        item = await self._json_object(request)
        added = await self._mutate(lambda: self.library.add(item))
        logger.info("Added %s", added.get("id"))
        return web.json_response(added, status=201)

    async def _update(self, request: web.Request) -> web.Response:
        by_uuid = self._by_uuid(request)
        identifier = request.match_info["identifier"]
        body = await self._json_object(request)
        updates = body.get("updates")
        on_id_collision = body.get("onIdCollision", "fail")
        if not isinstance(updates, dict):
            raise InvalidInputError("updates must be a JSON object")
        if on_id_collision not in ("fail", "suffix"):
            raise InvalidInputError(f"Invalid onIdCollision: {on_id_collision}")

        result = await self._mutate(
            lambda: self.library.update(
                identifier, updates, by_uuid=by_uuid, on_id_collision=on_id_collision
            )
        )
        if result.id_collision:
            return web.json_response(
                {**result.to_dict(), "error": "Citation key already in use", "kind": "id_collision"},
                status=409,
            )
        if not result.updated:
            return web.json_response(
                {**result.to_dict(), "error": f"Reference '{identifier}' not found", "kind": "not_found"},
                status=404,
            )
        return web.json_response(result.to_dict())

    async def _remove(self, request: web.Request) -> web.Response:
        by_uuid = self._by_uuid(request)
        identifier = request.match_info["identifier"]
        result = await self._mutate(lambda: self.library.remove(identifier, by_uuid=by_uuid))
        if not result.removed:
            return web.json_response(
                {**result.to_dict(), "error": f"Reference '{identifier}' not found", "kind": "not_found"},
                status=404,
            )
        return web.json_response(result.to_dict())

    async def _save(self, request: web.Request) -> web.Response:
        await self._mutate(self.library.save)
        return web.json_response({"saved": True})

    async def _list(self, request: web.Request) -> web.Response:
        options = ListOptions.from_dict(await self._json_object(request))
        async with self._lock:
            self._refresh()
            result = await self.library.list(options)
        return web.json_response(result.to_dict())

    async def _search(self, request: web.Request) -> web.Response:
        options = SearchOptions.from_dict(await self._json_object(request))
        async with self._lock:
            self._refresh()
            result = await self.library.search(options)
        return web.json_response(result.to_dict())

    async def _cite(self, request: web.Request) -> web.Response:
        options = CiteOptions.from_dict(await self._json_object(request))
        async with self._lock:
            self._refresh()
            result = await self.library.cite(options)
        return web.json_response(result.to_dict())

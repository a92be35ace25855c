"""HTTP surface for driving and probing the system under test.

The app routes inbound traffic into the system's real entry point and
exposes its state through read-only endpoints, so test code verifies what a
client could observe instead of calling internal functions:

    POST   /send                submit inbound traffic       -> 202
    GET    /state/{subject_id}  state snapshot               -> 200 | 404
    GET    /history/{subject_id} accumulated history         -> 200 | 404
    DELETE /user/{subject_id}   targeted reset (namespace)   -> 200 | 403
    GET    /health

``ProbeClient`` and ``AsyncProbeClient`` wrap the same routes for test code.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .errors import NamespaceViolation, ProbeUnreachable, PurgeFailure
from .isolation import DataIsolationManager
from .middleware import CorrelationMiddleware
from .observability import get_logger
from .protocols import SystemUnderTest

logger = get_logger(__name__)


def _subject_path(route: str, subject_id: str) -> str:
    """Path for a per-subject route; ids are quoted whole, slashes included."""
    return f"/{route}/{quote(subject_id, safe='')}"


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": message},
    )


def create_probe_router(
    system: SystemUnderTest,
    isolation: DataIsolationManager | None = None,
) -> APIRouter:
    """Create the send/probe/reset router bound to ``system``."""
    router = APIRouter(tags=["harness"])

    @router.post("/send")
    async def send(request: Request) -> JSONResponse:
        """Forward the raw request body to the system's inbound entry point."""
        raw = await request.body()
        try:
            payload = json.loads(raw) if raw else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _error(400, "INVALID_JSON", "Request body must be JSON")
        if not isinstance(payload, dict):
            return _error(400, "INVALID_PAYLOAD", "Request body must be a JSON object")

        try:
            await run_in_threadpool(system.handle_inbound_request, payload)
        except ValueError as exc:
            return _error(400, "INVALID_PAYLOAD", str(exc))
        logger.debug("inbound_forwarded", subject_id=payload.get("subject_id"))
        return JSONResponse(status_code=202, content={"accepted": True})

    @router.get("/state/{subject_id:path}")
    async def state(subject_id: str) -> JSONResponse:
        snapshot = await run_in_threadpool(system.query_state, subject_id)
        if snapshot is None:
            return _error(404, "NOT_FOUND", f"No state for {subject_id}")
        return JSONResponse(content=snapshot.to_dict())

    @router.get("/history/{subject_id:path}")
    async def history(subject_id: str) -> JSONResponse:
        snapshot = await run_in_threadpool(system.query_state, subject_id)
        if snapshot is None:
            return _error(404, "NOT_FOUND", f"No history for {subject_id}")
        return JSONResponse(
            content={
                "subject_id": subject_id,
                "history": [dict(entry) for entry in snapshot.history],
            }
        )

    @router.delete("/user/{subject_id:path}")
    async def reset_user(subject_id: str) -> JSONResponse:
        if isolation is None:
            return _error(501, "NOT_CONFIGURED", "No isolation manager attached")
        try:
            report = await run_in_threadpool(isolation.reset_subject, subject_id)
        except NamespaceViolation as exc:
            return _error(403, "OUTSIDE_NAMESPACE", str(exc))
        except PurgeFailure as exc:
            logger.error("subject_reset_failed", subject_id=subject_id, error=str(exc))
            return _error(500, "RESET_FAILED", str(exc))
        return JSONResponse(
            content={"subject_id": subject_id, "deleted": report.as_dict()},
        )

    return router


def create_harness_app(
    system: SystemUnderTest,
    isolation: DataIsolationManager | None = None,
) -> FastAPI:
    """Create the FastAPI app served by ``ServerLifecycle``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("harness_app_startup")
        yield
        logger.info("harness_app_shutdown")

    app = FastAPI(
        title="Ephemeral Harness",
        description="Inbound routing and state probes for integration tests",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.system = system
    app.state.isolation = isolation

    app.add_middleware(CorrelationMiddleware)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(create_probe_router(system, isolation))
    return app


# ── Clients ─────────────────────────────────────────────────────────


class ProbeClient:
    """Blocking client for the harness HTTP surface.

    Transport failures raise ``ProbeUnreachable``; probes of unknown
    subjects return ``None``; other HTTP errors raise ``httpx.HTTPStatusError``.

    Args:
        base_url: Listener URL, e.g. ``http://127.0.0.1:8765``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (for test injection).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._base_url, timeout=timeout, transport=transport,
        )

    def __enter__(self) -> ProbeClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise ProbeUnreachable(
                f"{self._base_url}{path}", f"{type(exc).__name__}: {exc}",
            ) from exc

    def send(self, subject_id: str, text: str, **extra: Any) -> dict[str, Any]:
        """Submit one inbound message."""
        return self.send_raw({"subject_id": subject_id, "text": text, **extra})

    def send_raw(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._request("POST", "/send", json=payload)
        response.raise_for_status()
        return response.json()

    def state(self, subject_id: str) -> dict[str, Any] | None:
        response = self._request("GET", _subject_path("state", subject_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def history(self, subject_id: str) -> list[dict[str, Any]] | None:
        response = self._request("GET", _subject_path("history", subject_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()["history"]

    def reset_user(self, subject_id: str) -> dict[str, Any]:
        response = self._request("DELETE", _subject_path("user", subject_id))
        response.raise_for_status()
        return response.json()

    def health(self) -> dict[str, Any]:
        response = self._request("GET", "/health")
        response.raise_for_status()
        return response.json()


class AsyncProbeClient:
    """Async twin of ``ProbeClient`` for asyncio test code."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout, transport=transport,
        )

    async def __aenter__(self) -> AsyncProbeClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise ProbeUnreachable(
                f"{self._base_url}{path}", f"{type(exc).__name__}: {exc}",
            ) from exc

    async def send(self, subject_id: str, text: str, **extra: Any) -> dict[str, Any]:
        response = await self._request(
            "POST", "/send", json={"subject_id": subject_id, "text": text, **extra},
        )
        response.raise_for_status()
        return response.json()

    async def state(self, subject_id: str) -> dict[str, Any] | None:
        response = await self._request("GET", _subject_path("state", subject_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def history(self, subject_id: str) -> list[dict[str, Any]] | None:
        response = await self._request("GET", _subject_path("history", subject_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()["history"]

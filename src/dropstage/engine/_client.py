"""Docker Engine API client: thin aiohttp wrapper over the daemon's HTTP API.

Speaks to the daemon over its unix socket (default) or TCP.  Every method
maps to one endpoint and raises :class:`~dropstage.errors.EngineError`
tagged with the operation name, so callers can tell which phase failed.

Streaming endpoints (image build output, archive download, logs) hand back
the live response wrapped in a :class:`ResponseReader`; the caller owns it
and must close it.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import aiohttp

from dropstage.config import EngineConfig
from dropstage.errors import EngineError
from dropstage.logger import logger

DEFAULT_HOST = "unix:///var/run/docker.sock"

# Response statuses that count as success, per operation
_OK = (200, 201, 204)


def _flag(value: bool) -> str:
    return "1" if value else "0"


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    """Extract the daemon's ``{"message": ...}`` body, falling back to raw text."""
    try:
        text = await resp.text()
    except (aiohttp.ClientError, OSError) as exc:
        return str(exc)
    try:
        return str(json.loads(text).get("message", text)).strip()
    except (ValueError, AttributeError):
        return text.strip() or resp.reason or "unknown error"


async def _json_body(resp: aiohttp.ClientResponse, operation: str) -> dict[str, Any]:
    async with resp:
        try:
            return await resp.json(content_type=None)
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            raise EngineError(operation, f"unreadable response: {exc}") from exc


class ResponseReader:
    """A live engine response exposed through the stream ``Reader`` interface."""

    def __init__(self, resp: aiohttp.ClientResponse, operation: str) -> None:
        self._resp = resp
        self._operation = operation

    async def read(self, n: int = -1) -> bytes:
        try:
            return await self._resp.content.read(n)
        except (aiohttp.ClientError, OSError) as exc:
            raise EngineError(self._operation, str(exc) or type(exc).__name__) from exc

    async def close(self) -> None:
        self._resp.close()


class EngineClient:
    """Async client for the subset of the Engine API staging needs."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        *,
        api_version: str | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.api_version = api_version
        self.connect_timeout = connect_timeout
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> EngineClient:
        return cls(
            config.host,
            api_version=config.api_version,
            connect_timeout=config.connect_timeout,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _base_url(self) -> str:
        if self.host.startswith("unix://"):
            base = "http://localhost"
        elif self.host.startswith("tcp://"):
            base = "http://" + self.host[len("tcp://") :]
        else:
            base = self.host
        base = base.rstrip("/")
        if self.api_version:
            base += f"/v{self.api_version}"
        return base

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector: aiohttp.BaseConnector | None = None
            if self.host.startswith("unix://"):
                connector = aiohttp.UnixConnector(path=self.host[len("unix://") :])
            # Waits, log follows and archive copies run as long as the build does
            timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> EngineClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        ok: tuple[int, ...] = _OK,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """Issue a request; raise ``EngineError`` unless the status is in *ok*."""
        url = self._base_url() + path
        try:
            resp = await self._get_session().request(method, url, **kwargs)
        except (aiohttp.ClientError, OSError) as exc:
            raise EngineError(operation, str(exc) or type(exc).__name__) from exc
        if resp.status not in ok:
            message = await _error_message(resp)
            resp.release()
            raise EngineError(operation, message, status=resp.status)
        return resp

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def build_image(
        self,
        context: bytes,
        *,
        tag: str,
        pull: bool = False,
        quiet: bool = True,
    ) -> AsyncIterator[dict[str, Any]]:
        """POST /build and yield each JSON message of the progress stream."""
        params = {
            "t": tag,
            "q": _flag(quiet),
            "pull": _flag(pull),
            "rm": "1",
            "forcerm": "1",
        }
        resp = await self._request(
            "image build",
            "POST",
            "/build",
            params=params,
            data=context,
            headers={"Content-Type": "application/x-tar"},
        )
        try:
            async for raw in resp.content:
                line = raw.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except ValueError as exc:
                    raise EngineError(
                        "image build", f"malformed progress message: {line[:200]!r}"
                    ) from exc
                yield message
        except (aiohttp.ClientError, OSError) as exc:
            raise EngineError("image build", str(exc) or type(exc).__name__) from exc
        finally:
            resp.release()

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def create_container(self, name: str, config: dict[str, Any]) -> str:
        """POST /containers/create: returns the new container's id."""
        resp = await self._request(
            "container create",
            "POST",
            "/containers/create",
            params={"name": name},
            json=config,
        )
        body = await _json_body(resp, "container create")
        container_id = body.get("Id", "")
        if not container_id:
            raise EngineError("container create", "engine returned no container id")
        for warning in body.get("Warnings") or []:
            logger.warning("Engine warning on create", container=name, warning=warning)
        return container_id

    async def start_container(self, container_id: str) -> None:
        # 304 = already started
        resp = await self._request(
            "container start",
            "POST",
            f"/containers/{container_id}/start",
            ok=(204, 304),
        )
        resp.release()

    async def wait_container(self, container_id: str) -> int:
        """POST /containers/{id}/wait: blocks until exit, returns the status code."""
        resp = await self._request("container wait", "POST", f"/containers/{container_id}/wait")
        body = await _json_body(resp, "container wait")
        if not isinstance(body, dict):
            raise EngineError("container wait", f"malformed response: {body!r}")
        error = body.get("Error") or {}
        if isinstance(error, dict) and error.get("Message"):
            raise EngineError("container wait", error["Message"])
        try:
            return int(body["StatusCode"])
        except (KeyError, TypeError, ValueError) as exc:
            raise EngineError("container wait", f"malformed response: {body!r}") from exc

    async def remove_container(self, ref: str) -> bool:
        """Force-remove a container with its volumes.

        Returns ``False`` when the engine no longer knows it (404) or is
        already removing it (409); both count as removed.
        """
        resp = await self._request(
            "container remove",
            "DELETE",
            f"/containers/{ref}",
            params={"force": "1", "v": "1"},
            ok=(204, 404, 409),
        )
        resp.release()
        return resp.status == 204

    # ------------------------------------------------------------------
    # Archives & logs
    # ------------------------------------------------------------------

    async def put_archive(
        self,
        container_id: str,
        path: str,
        body: bytes | AsyncIterable[bytes],
    ) -> None:
        """PUT /containers/{id}/archive: extract a tar into *path*."""
        resp = await self._request(
            "archive upload",
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": path, "copyUIDGID": "1"},
            data=body,
            headers={"Content-Type": "application/x-tar"},
        )
        resp.release()

    async def get_archive(
        self, container_id: str, path: str
    ) -> tuple[ResponseReader, dict[str, Any]]:
        """GET /containers/{id}/archive: a tar of *path* plus its stat."""
        resp = await self._request(
            "archive download",
            "GET",
            f"/containers/{container_id}/archive",
            params={"path": path},
        )
        stat: dict[str, Any] = {}
        header = resp.headers.get("X-Docker-Container-Path-Stat")
        if header:
            try:
                stat = json.loads(base64.b64decode(header))
            except (binascii.Error, ValueError):
                logger.debug("Unparseable path stat header", path=path, header=header)
        return ResponseReader(resp, "archive download"), stat

    async def container_logs(
        self,
        container_id: str,
        *,
        follow: bool = True,
        timestamps: bool = True,
    ) -> ResponseReader:
        """GET /containers/{id}/logs: combined stdout/stderr."""
        resp = await self._request(
            "container logs",
            "GET",
            f"/containers/{container_id}/logs",
            params={
                "follow": _flag(follow),
                "stdout": "1",
                "stderr": "1",
                "timestamps": _flag(timestamps),
            },
        )
        return ResponseReader(resp, "container logs")

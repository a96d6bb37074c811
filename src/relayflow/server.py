"""HTTP control server.

Exposes webhook ingress and run control over HTTP/1.1 using only the
standard library (``asyncio``, ``http``, ``json``).

Routes::

    POST /webhook/{code}                       webhook trigger
    POST /pipelines/{code}/runs                start a run
    GET  /runs/{id}                            run status
    POST /runs/{id}/cancel                     cancel a run
    POST /runs/{id}/gates/{step}/approve       approve a gate
    POST /runs/{id}/gates/{step}/reject        reject a gate
    POST /errors/{id}/retry                    replay a failed record
    POST /validate                             validate a definition
    POST /config/reload                        reload configuration
    GET  /health                               liveness
"""

from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any

from relayflow.engine import Engine
from relayflow.errors import (
    CompilationError,
    GuardError,
    LockContentionError,
    NotFoundError,
    ValidationError,
)
from relayflow.pipeline.dot import DotParseError, parse_dot_string
from relayflow.pipeline.models import PipelineDefinition
from relayflow.pipeline.validator import ValidationLevel, validate_definition

logger = logging.getLogger(__name__)

Response = tuple[HTTPStatus, str]


def _json(status: HTTPStatus, body: dict[str, Any]) -> Response:
    return status, json.dumps(body, default=str)


class ControlServer:
    """Async HTTP server in front of an :class:`Engine`.

    Args:
        engine: The engine to control.
        host: Bind address (default ``"127.0.0.1"``).
        port: Bind port (default ``8080``; ``0`` picks a free port).
    """

    def __init__(self, engine: Engine, host: str = "127.0.0.1", port: int = 8080) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        """Start listening. With port 0 the bound port is stored on :attr:`port`."""
        self._server = await asyncio.start_server(
            self._handle_connection, self._host, self._port
        )
        sockets = self._server.sockets or []
        if sockets:
            self._port = sockets[0].getsockname()[1]
        logger.info("Control server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line, headers, body = await self._read_request(reader)
            if request_line is None:
                return
            method, path, _ = request_line.split(" ", 2)
            status, response_body = await self.route(method, path, headers, body)
            await self._send_response(writer, status, response_body)
        except Exception:
            logger.exception("Connection handler error")
            try:
                await self._send_response(
                    writer,
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    json.dumps({"error": "Internal server error"}),
                )
            except ConnectionError:
                pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str | None, dict[str, str], bytes]:
        """Parse an HTTP request from the stream.

        Returns:
            Tuple of (request_line, headers_dict, raw_body). request_line
            is None if the connection was closed.
        """
        try:
            request_line_bytes = await asyncio.wait_for(reader.readline(), timeout=30.0)
        except (asyncio.TimeoutError, ConnectionError):
            return None, {}, b""

        request_line = request_line_bytes.decode("utf-8").strip()
        if not request_line:
            return None, {}, b""

        headers: dict[str, str] = {}
        while True:
            line = (await reader.readline()).decode("utf-8").strip()
            if not line:
                break
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        body = b""
        content_length = int(headers.get("content-length", "0"))
        if content_length > 0:
            body = await reader.readexactly(content_length)
        return request_line, headers, body

    async def _send_response(
        self, writer: asyncio.StreamWriter, status: HTTPStatus, body: str
    ) -> None:
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body.encode('utf-8'))}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    async def route(
        self, method: str, path: str, headers: dict[str, str], body: bytes
    ) -> Response:
        """Dispatch one request and map engine errors to HTTP statuses."""
        path = path.split("?")[0].rstrip("/")
        parts = path.split("/")[1:]
        try:
            return await self._dispatch(method, parts, headers, body)
        except NotFoundError as exc:
            return _json(HTTPStatus.NOT_FOUND, {"error": str(exc)})
        except CompilationError as exc:
            return _json(
                HTTPStatus.BAD_REQUEST,
                {"error": "Validation failed", "issues": [i.to_dict() for i in exc.issues]},
            )
        except ValidationError as exc:
            return _json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
        except (GuardError, LockContentionError) as exc:
            return _json(HTTPStatus.CONFLICT, {"error": str(exc)})

    async def _dispatch(
        self, method: str, parts: list[str], headers: dict[str, str], body: bytes
    ) -> Response:
        coordinator = self._engine.coordinator

        if method == "GET" and parts == ["health"]:
            return _json(
                HTTPStatus.OK,
                {
                    "status": "ok",
                    "configVersion": self._engine.config.version,
                    "activeRuns": len(coordinator.active_runs()),
                },
            )

        if method == "POST" and parts == ["config", "reload"]:
            try:
                config = self._engine.reload_config()
            except ValueError as exc:
                return _json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
            return _json(HTTPStatus.OK, {"configVersion": config.version})

        if method == "POST" and len(parts) == 2 and parts[0] == "webhook":
            response = await self._engine.triggers.webhooks.handle(parts[1], headers, body)
            return _json(HTTPStatus(response.status), response.body)

        if method == "POST" and parts == ["validate"]:
            return self._handle_validate(body)

        data = _load_body(body)
        if data is None:
            return _json(HTTPStatus.BAD_REQUEST, {"error": "Invalid JSON body"})

        if method == "POST" and len(parts) == 3 and parts[0] == "pipelines" and parts[2] == "runs":
            records = data.get("records")
            if records is not None and not isinstance(records, list):
                return _json(HTTPStatus.BAD_REQUEST, {"error": "'records' must be a list"})
            run = await coordinator.start(
                parts[1],
                trigger="api",
                seed_records=records,
                wait=False,
                resume=bool(data.get("resume", True)),
            )
            return _json(HTTPStatus.ACCEPTED, {"id": run.id, "status": run.status.value})

        if len(parts) >= 2 and parts[0] == "runs":
            run_id = parts[1]
            if method == "GET" and len(parts) == 2:
                return _json(HTTPStatus.OK, coordinator.get_run(run_id).to_dict())
            if method == "POST" and parts[2:] == ["cancel"]:
                run = await coordinator.cancel(run_id)
                return _json(HTTPStatus.OK, {"id": run.id, "status": run.status.value})
            if method == "POST" and len(parts) == 5 and parts[2] == "gates":
                step_key, decision = parts[3], parts[4]
                if decision == "approve":
                    run = await coordinator.approve_gate(run_id, step_key, wait=False)
                    return _json(HTTPStatus.ACCEPTED, {"id": run.id, "status": run.status.value})
                if decision == "reject":
                    run = await coordinator.reject_gate(
                        run_id, step_key, str(data.get("reason", ""))
                    )
                    return _json(HTTPStatus.OK, {"id": run.id, "status": run.status.value})

        if method == "POST" and len(parts) == 3 and parts[0] == "errors" and parts[2] == "retry":
            patch = data.get("patch")
            if patch is not None and not isinstance(patch, dict):
                return _json(HTTPStatus.BAD_REQUEST, {"error": "'patch' must be an object"})
            run = await coordinator.retry_record(
                parts[1], patch, confirm=bool(data.get("confirm", False)), wait=False
            )
            if run is None:
                return _json(HTTPStatus.OK, {"errorId": parts[1], "resolved": True})
            return _json(HTTPStatus.ACCEPTED, {"id": run.id, "status": run.status.value})

        return _json(HTTPStatus.NOT_FOUND, {"error": f"Not found: {method} /{'/'.join(parts)}"})

    def _handle_validate(self, body: bytes) -> Response:
        """Validate ``{"definition": {...}}`` or ``{"dot": "..."}`` without storing it."""
        data = _load_body(body)
        if data is None:
            return _json(HTTPStatus.BAD_REQUEST, {"error": "Invalid JSON body"})
        try:
            if isinstance(data.get("dot"), str):
                definition = parse_dot_string(data["dot"])
            elif isinstance(data.get("definition"), dict):
                definition = PipelineDefinition.from_dict(data["definition"])
            else:
                return _json(
                    HTTPStatus.BAD_REQUEST, {"error": "Provide a 'definition' or 'dot' field"}
                )
        except (DotParseError, ValueError) as exc:
            return _json(HTTPStatus.OK, {"valid": False, "issues": [{"message": str(exc)}]})

        level = (
            ValidationLevel.QUICK
            if str(data.get("level", "")).lower() == "quick"
            else ValidationLevel.FULL
        )
        issues = validate_definition(definition, self._engine.registry, level)
        return _json(
            HTTPStatus.OK,
            {
                "valid": not issues,
                "code": definition.code,
                "issues": [i.to_dict() for i in issues],
            },
        )


def _load_body(body: bytes) -> dict[str, Any] | None:
    if not body.strip():
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None

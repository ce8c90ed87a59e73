"""WebSocket streaming of container and project logs."""

import asyncio
import logging
from typing import AsyncIterator, Optional, Union

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from prometheus_client import Gauge

from stackyard.core.dependencies import get_compose_service, get_container_service
from stackyard.core.exceptions import (
    EngineError,
    InvalidProjectNameError,
    ProjectNotFoundError,
    StackyardError,
)
from stackyard.services.compose import ComposeService
from stackyard.services.containers import ContainerService
from stackyard.services.logs import CancellationToken, LogStream, ProjectLogStream

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_NOT_FOUND = 4004
CLOSE_BAD_REQUEST = 4000

ACTIVE_STREAMS = Gauge("stackyard_log_streams_active", "Open log WebSocket streams", ["kind"])

LogSource = Union[LogStream, ProjectLogStream]


async def forward_lines(websocket: WebSocket, lines: AsyncIterator[str]) -> None:
    """Send each log line to the client, then an end marker."""
    async for line in lines:
        await websocket.send_json({"type": "log", "data": line})
    await websocket.send_json({"type": "end"})


async def watch_client(websocket: WebSocket, token: CancellationToken) -> None:
    """Answer pings until the client disconnects or asks to stop."""
    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong"})
            elif msg_type == "stop":
                return
    finally:
        token.cancel()


async def pump(websocket: WebSocket, stream: LogSource, token: CancellationToken) -> None:
    """Run forwarding and client handling until either side finishes."""
    forward_task = asyncio.create_task(forward_lines(websocket, stream))
    receive_task = asyncio.create_task(watch_client(websocket, token))

    done, pending = await asyncio.wait(
        [forward_task, receive_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, WebSocketDisconnect):
            pass

    for task in done:
        # Surfaces disconnects and stream errors to the caller
        task.result()


async def send_error(websocket: WebSocket, message: str, code: int = 1011) -> None:
    try:
        await websocket.send_json({"type": "error", "data": {"error": message}})
        await websocket.close(code=code)
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug(f"Could not report log stream error to client: {e}")


@router.websocket("/containers/{container_id}/logs")
async def container_logs(
    websocket: WebSocket,
    container_id: str,
    tail: int = 100,
    follow: bool = True,
    since: Optional[int] = None,
    containers: ContainerService = Depends(get_container_service),
):
    """
    Stream a container's logs.

    Server -> Client messages:
    - {"type": "log", "data": "<timestamped line>"}
    - {"type": "end"}
    - {"type": "error", "data": {"error": "..."}}
    - {"type": "pong"}

    Client -> Server messages:
    - {"type": "ping"}
    - {"type": "stop"}
    """
    await websocket.accept()
    ACTIVE_STREAMS.labels(kind="container").inc()
    token = CancellationToken()
    stream: Optional[LogStream] = None

    try:
        stream = await containers.stream_logs(
            container_id, follow=follow, tail=tail, since=since, token=token
        )
        logger.info(f"Log stream opened for container {container_id}")
        await pump(websocket, stream, token)
        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for container {container_id} logs")
    except EngineError as e:
        logger.error(f"Log stream failed for container {container_id}: {e}")
        await send_error(websocket, e.message, CLOSE_NOT_FOUND if e.is_not_found else 1011)
    finally:
        token.cancel()
        ACTIVE_STREAMS.labels(kind="container").dec()
        if stream is not None:
            await stream.aclose()


@router.websocket("/projects/{name}/logs")
async def project_logs(
    websocket: WebSocket,
    name: str,
    tail: Optional[int] = None,
    follow: bool = True,
    service: Optional[str] = None,
    compose: ComposeService = Depends(get_compose_service),
):
    """
    Stream the merged logs of a project's containers.

    Lines are prefixed with the service name; message types match the
    container log stream.
    """
    await websocket.accept()
    ACTIVE_STREAMS.labels(kind="project").inc()
    token = CancellationToken()
    stream: Optional[ProjectLogStream] = None

    try:
        stream = await compose.logs(name, follow=follow, tail=tail, service=service, token=token)
        logger.info(f"Log stream opened for project {name}")
        await pump(websocket, stream, token)
        await websocket.close()

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for project {name} logs")
    except InvalidProjectNameError as e:
        await send_error(websocket, str(e), CLOSE_BAD_REQUEST)
    except ProjectNotFoundError as e:
        await send_error(websocket, str(e), CLOSE_NOT_FOUND)
    except EngineError as e:
        logger.error(f"Log stream failed for project {name}: {e}")
        await send_error(websocket, e.message)
    except StackyardError as e:
        await send_error(websocket, str(e), CLOSE_NOT_FOUND)
    finally:
        token.cancel()
        ACTIVE_STREAMS.labels(kind="project").dec()
        if stream is not None:
            await stream.aclose()

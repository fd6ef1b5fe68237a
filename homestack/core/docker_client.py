"""Image pulls through the Docker Engine API with streamed progress."""

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from typing import Any

import docker
import structlog

from ..models.operation import PullEvent, PullProgressDetail
from .exceptions import ImagePullError
from .settings import HomestackSettings

logger = structlog.get_logger()

PullEventHandler = Callable[[PullEvent], Awaitable[None] | None]

DOCKER_CLIENT_TIMEOUT = 60
WORKER_JOIN_TIMEOUT = 10
_STREAM_EVENT = "event"
_STREAM_ERROR = "error"
_STREAM_DONE = "done"


def _number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def normalize_progress_detail(value: Any) -> PullProgressDetail | None:
    """Byte counts from the daemon plus a two-decimal percent when total is known."""
    if not isinstance(value, dict) or not value:
        return None

    current = _number(value.get("current"))
    total = _number(value.get("total"))
    percent = round(current / total * 100, 2) if total > 0 else None
    return PullProgressDetail(current=current, total=total, percent=percent)


def parse_pull_event(value: Any) -> PullEvent | None:
    """Decode one JSON message of the pull stream; None for anything unrecognized."""
    if not isinstance(value, dict):
        return None

    def text(key: str) -> str | None:
        raw = value.get(key)
        return raw if isinstance(raw, str) and raw else None

    error = text("error")
    if error is None and isinstance(value.get("errorDetail"), dict):
        message = value["errorDetail"].get("message")
        error = message if isinstance(message, str) and message else None

    return PullEvent(
        status=text("status") or "unknown",
        id=text("id"),
        progress=text("progress"),
        progress_detail=normalize_progress_detail(value.get("progressDetail")),
        error=error,
    )


class DockerImagePuller:
    """Pulls images over the local Docker socket and reports each stream event."""

    def __init__(self, settings: HomestackSettings):
        self.settings = settings
        self.logger = logger.bind(component="image_puller")

    @property
    def base_url(self) -> str:
        socket_path = self.settings.docker_socket_path
        if "://" in socket_path:
            return socket_path
        return f"unix://{socket_path}"

    def _stream_pull(
        self,
        image: str,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        stop: threading.Event,
        clients: list,
    ) -> None:
        """Blocking pull run in a worker thread, handing messages to the event loop."""
        try:
            client = docker.APIClient(base_url=self.base_url, timeout=DOCKER_CLIENT_TIMEOUT)
            clients.append(client)
            try:
                for raw in client.pull(image, stream=True, decode=True):
                    if stop.is_set():
                        break
                    loop.call_soon_threadsafe(queue.put_nowait, (_STREAM_EVENT, raw))
            finally:
                client.close()
        except Exception as e:
            loop.call_soon_threadsafe(queue.put_nowait, (_STREAM_ERROR, e))
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, (_STREAM_DONE, None))

    async def pull(self, image: str, on_event: PullEventHandler | None = None) -> None:
        """Pull ``image``; ``on_event`` sees every decoded progress message.

        Raises:
            ImagePullError: If the daemon rejects the pull or reports an error event
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        self.logger.info("Pulling image", image=image)
        clients: list = []
        worker = loop.run_in_executor(None, self._stream_pull, image, loop, queue, stop, clients)

        async def consume() -> None:
            while True:
                kind, payload = await queue.get()
                if kind == _STREAM_DONE:
                    return
                if kind == _STREAM_ERROR:
                    raise ImagePullError(f"Docker pull failed for {image}: {payload}") from payload

                event = parse_pull_event(payload)
                if event is None:
                    continue
                if event.error:
                    raise ImagePullError(event.error)
                if on_event is not None:
                    result = on_event(event)
                    if inspect.isawaitable(result):
                        await result

        completed = False
        try:
            await asyncio.wait_for(consume(), timeout=self.settings.pull_timeout)
            completed = True
        except asyncio.TimeoutError as e:
            raise ImagePullError(
                f"Docker pull for {image} timed out after {self.settings.pull_timeout} seconds"
            ) from e
        finally:
            stop.set()
            if not completed:
                # a stalled stream only sees the stop flag once its socket is closed
                for client in clients:
                    client.close()
            await self._join_worker(image, worker)

        self.logger.info("Pulled image", image=image)

    async def _join_worker(self, image: str, worker: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(worker), timeout=WORKER_JOIN_TIMEOUT)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Image pull worker still running", image=image, timeout=WORKER_JOIN_TIMEOUT
            )

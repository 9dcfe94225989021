"""Container lifecycle management for container-hosted MCP servers.

``ContainerRuntime`` is the narrow, synchronous view of a container engine
the bridge needs. ``DockerContainerRuntime`` implements it with the Docker
SDK. ``ContainerEnvironment`` drives one container through its lifecycle
and performs the per-call attach/write/drain exchange, pushing blocking
engine calls onto worker threads.
"""

import asyncio
import contextlib
import logging
import socket
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

import docker
from docker.context import ContextAPI
from docker.errors import APIError, ImageNotFound, NotFound
from docker.tls import TLSConfig
from docker.utils.socket import SocketError, frames_iter
from pydantic import Field

from mcpbridge.core.models import StrictBaseModel
from mcpbridge.core.settings.settings import get_settings

from .base import (
    MCPConnectionError,
    MCPEnvironmentDeadError,
    MCPError,
    MCPStartFailureError,
    MCPStartTimeoutError,
)

logger = logging.getLogger(__name__)

STDOUT = 1
STDERR = 2

STOPPED_STATUSES = frozenset({"exited", "dead", "removing", "missing"})


class ContainerConfig(StrictBaseModel):
    """What to run inside the container."""

    image: str = Field(..., min_length=1, description="Image reference")
    command: List[str] = Field(default_factory=list, description="Command-line arguments")
    environment: Dict[str, str] = Field(default_factory=dict, description="Environment variables")


class DockerRuntimeSettings(StrictBaseModel):
    """How to reach and authenticate against the Docker engine."""

    docker_host: Optional[str] = Field(default=None, description="Engine URL, defaults to DOCKER_HOST")
    docker_config: Optional[str] = Field(default=None, description="Directory holding the docker config.json")
    docker_context: Optional[str] = Field(default=None, description="Named docker context, overrides docker_host")
    docker_cert_path: Optional[str] = Field(default=None, description="Directory with ca.pem, cert.pem and key.pem")
    docker_tls_verify: bool = Field(default=False, description="Verify the engine's TLS certificate")
    registry_email: Optional[str] = Field(default=None, description="Registry account email")
    registry_username: Optional[str] = Field(default=None, description="Registry user name")
    registry_password: Optional[str] = Field(default=None, repr=False, description="Registry password")
    registry_url: Optional[str] = Field(default=None, description="Registry URL")
    api_version: Optional[str] = Field(default=None, description="Engine API version, 'auto' when unset")


class EnvironmentHandle(StrictBaseModel):
    """A created container and the configuration it was created from."""

    environment_id: str
    config: ContainerConfig


class EnvironmentState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class ContainerStream(Protocol):
    """An attached stdin/stdout/stderr session."""

    def write(self, data: bytes) -> None:
        ...

    def frames(self) -> Iterator[Tuple[int, bytes]]:
        """Yield ``(stream_id, chunk)`` pairs until the stream ends."""
        ...

    def close(self) -> None:
        ...


class ContainerRuntime(Protocol):
    """Container engine operations used by ContainerEnvironment."""

    def create(self, config: ContainerConfig) -> str:
        ...

    def start(self, environment_id: str) -> None:
        ...

    def status(self, environment_id: str) -> str:
        """Return the engine status, or ``"missing"`` for unknown containers."""
        ...

    def attach(self, environment_id: str) -> ContainerStream:
        ...

    def kill(self, environment_id: str) -> None:
        ...

    def remove(self, environment_id: str) -> None:
        ...


class DockerAttachedStream:
    """ContainerStream over a socket returned by ``attach_socket``."""

    def __init__(self, sock: Any):
        self._sock = sock
        # SocketIO wraps the real socket; npipe sockets are used directly
        self._raw = getattr(sock, "_sock", sock)

    def write(self, data: bytes) -> None:
        self._raw.sendall(data)

    def frames(self) -> Iterator[Tuple[int, bytes]]:
        try:
            for stream_id, chunk in frames_iter(self._sock, tty=False):
                yield stream_id, chunk
        except (OSError, SocketError) as e:
            logger.debug(f"Attached stream ended: {e}")

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._raw.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(OSError):
            self._sock.close()


class DockerContainerRuntime:
    """ContainerRuntime backed by the Docker SDK."""

    def __init__(self, settings: Optional[DockerRuntimeSettings] = None):
        self.settings = settings or DockerRuntimeSettings()
        self._client: Optional[docker.DockerClient] = None

    def _tls_config(self) -> Optional[TLSConfig]:
        cert_path = self.settings.docker_cert_path
        if cert_path:
            cert_dir = Path(cert_path).expanduser()
            return TLSConfig(
                client_cert=(str(cert_dir / "cert.pem"), str(cert_dir / "key.pem")),
                ca_cert=str(cert_dir / "ca.pem") if self.settings.docker_tls_verify else None,
                verify=self.settings.docker_tls_verify,
            )
        if self.settings.docker_tls_verify:
            return TLSConfig(verify=True)
        return None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            base_url = self.settings.docker_host or get_settings().docker_host
            tls = self._tls_config()

            if self.settings.docker_context:
                context = ContextAPI.get_context(self.settings.docker_context)
                if context is None:
                    raise MCPStartFailureError(f"Docker context '{self.settings.docker_context}' not found")
                base_url = context.Host
                tls = context.TLSConfig or tls

            client = docker.DockerClient(base_url=base_url, version=self.settings.api_version or "auto", tls=tls)

            if self.settings.registry_username:
                dockercfg_path = None
                if self.settings.docker_config:
                    dockercfg_path = str(Path(self.settings.docker_config).expanduser() / "config.json")
                client.login(
                    username=self.settings.registry_username,
                    password=self.settings.registry_password,
                    email=self.settings.registry_email,
                    registry=self.settings.registry_url,
                    dockercfg_path=dockercfg_path,
                )
                logger.debug(f"Logged in to registry {self.settings.registry_url or 'default'}")

            logger.debug(f"Connected to Docker engine at {base_url}")
            self._client = client
        return self._client

    def create(self, config: ContainerConfig) -> str:
        create_args: Dict[str, Any] = {
            "image": config.image,
            "command": config.command or None,
            "environment": config.environment or None,
            "stdin_open": True,
            "tty": False,
        }
        try:
            container = self.client.containers.create(**create_args)
        except ImageNotFound:
            logger.info(f"Image {config.image} not present locally, pulling")
            self.client.images.pull(config.image)
            container = self.client.containers.create(**create_args)
        return container.id

    def start(self, environment_id: str) -> None:
        self.client.api.start(environment_id)

    def status(self, environment_id: str) -> str:
        try:
            container = self.client.containers.get(environment_id)
        except NotFound:
            return "missing"
        return container.status

    def attach(self, environment_id: str) -> DockerAttachedStream:
        sock = self.client.api.attach_socket(
            environment_id, params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
        )
        return DockerAttachedStream(sock)

    def kill(self, environment_id: str) -> None:
        try:
            self.client.api.kill(environment_id)
        except NotFound:
            logger.debug(f"Container {environment_id[:12]} already gone")
        except APIError as e:
            # 409: the container is not running
            if e.status_code != 409:
                raise
            logger.debug(f"Container {environment_id[:12]} was not running")

    def remove(self, environment_id: str) -> None:
        try:
            self.client.api.remove_container(environment_id, force=True)
        except NotFound:
            logger.debug(f"Container {environment_id[:12]} already removed")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class ContainerEnvironment:
    """Owns one container from creation to removal.

    Each exchange attaches to the container's streams afresh, writes one
    frame and drains stdout until the caller's condition holds. Callers
    must not run two exchanges on the same environment concurrently.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        start_timeout: float = 30.0,
        notification_grace: float = 0.1,
        log_events: bool = False,
        poll_interval: float = 0.1,
    ):
        self._runtime = runtime
        self.start_timeout = start_timeout
        self.notification_grace = notification_grace
        self.log_events = log_events
        self.poll_interval = poll_interval
        self._state = EnvironmentState.CREATED
        self._handle: Optional[EnvironmentHandle] = None

    @property
    def state(self) -> EnvironmentState:
        return self._state

    @property
    def handle(self) -> Optional[EnvironmentHandle]:
        return self._handle

    async def start(self, config: ContainerConfig) -> EnvironmentHandle:
        """Create and start the container, waiting until it is running.

        Raises:
            MCPStartTimeoutError: If it is not running within ``start_timeout``
            MCPStartFailureError: If it cannot be created or stops while starting
        """
        if self._state != EnvironmentState.CREATED:
            raise MCPStartFailureError(f"Environment cannot be started from state '{self._state.value}'")

        self._state = EnvironmentState.STARTING
        try:
            environment_id = await asyncio.to_thread(self._runtime.create, config)
            self._handle = EnvironmentHandle(environment_id=environment_id, config=config)
            await asyncio.to_thread(self._runtime.start, environment_id)
            await asyncio.wait_for(self._wait_until_running(environment_id), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            await self._abort_start()
            raise MCPStartTimeoutError(
                f"Container for image '{config.image}' did not start within {self.start_timeout} seconds"
            ) from None
        except MCPStartFailureError:
            await self._abort_start()
            raise
        except Exception as e:
            await self._abort_start()
            raise MCPStartFailureError(f"Failed to start container for image '{config.image}': {e}") from e

        self._state = EnvironmentState.RUNNING
        logger.info(f"Started container {environment_id[:12]} from image {config.image}")
        return self._handle

    async def _wait_until_running(self, environment_id: str) -> None:
        while True:
            status = await asyncio.to_thread(self._runtime.status, environment_id)
            if status == "running":
                return
            if status in STOPPED_STATUSES:
                raise MCPStartFailureError(
                    f"Container {environment_id[:12]} stopped while starting (status: {status})"
                )
            await asyncio.sleep(self.poll_interval)

    async def _abort_start(self) -> None:
        self._state = EnvironmentState.FAILED
        handle, self._handle = self._handle, None
        if handle is None:
            return
        for step in (self._runtime.kill, self._runtime.remove):
            try:
                await asyncio.to_thread(step, handle.environment_id)
            except Exception as e:
                logger.warning(f"Cleanup of container {handle.environment_id[:12]} after failed start: {e}")

    def _require_running(self) -> EnvironmentHandle:
        if self._state != EnvironmentState.RUNNING or self._handle is None:
            raise MCPEnvironmentDeadError(f"Container is not alive (state: {self._state.value})")
        return self._handle

    async def attach_stream(
        self,
        payload: str,
        on_line: Callable[[str], None],
        until: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Write one frame to the container and drain its output.

        Args:
            payload: Encoded frame; a trailing newline is added if missing
            on_line: Called, from a worker thread, for every stdout line
            until: Drain stops once this returns True. When omitted, output
                is drained for ``notification_grace`` seconds and the
                stream is then closed.

        Raises:
            MCPEnvironmentDeadError: If the container is not running or its
                output ends before ``until`` is satisfied
            MCPConnectionError: If the engine fails while the container is
                still running
        """
        handle = self._require_running()
        short_id = handle.environment_id[:12]
        stream: Optional[ContainerStream] = None
        try:
            stream = await asyncio.to_thread(self._runtime.attach, handle.environment_id)
            data = payload if payload.endswith("\n") else payload + "\n"
            if self.log_events:
                logger.debug(f"[{short_id}] >> {data.rstrip()}")
            await asyncio.to_thread(stream.write, data.encode("utf-8"))

            if until is None:
                await self._drain_for_grace(stream, on_line, short_id)
            else:
                await asyncio.to_thread(self._drain, stream, on_line, until, short_id)
        except MCPEnvironmentDeadError:
            self._mark_failed()
            raise
        except MCPError:
            raise
        except Exception as e:
            raise await self._engine_failure(handle, e) from e
        finally:
            if stream is not None:
                await asyncio.to_thread(stream.close)

    async def _drain_for_grace(self, stream: ContainerStream, on_line: Callable[[str], None], short_id: str) -> None:
        drain = asyncio.ensure_future(asyncio.to_thread(self._drain, stream, on_line, None, short_id))
        done, _ = await asyncio.wait({drain}, timeout=self.notification_grace)
        if drain in done:
            # Output ended on its own within the grace period
            drain.result()
            return

        # Closing the stream ends the blocking read in the worker thread
        await asyncio.to_thread(stream.close)
        results = await asyncio.gather(drain, return_exceptions=True)
        if isinstance(results[0], Exception):
            logger.debug(f"[{short_id}] Stream closed after grace period: {results[0]}")

    async def _engine_failure(self, handle: EnvironmentHandle, error: Exception) -> MCPConnectionError:
        short_id = handle.environment_id[:12]
        try:
            status = await asyncio.to_thread(self._runtime.status, handle.environment_id)
        except Exception as status_error:
            logger.debug(f"[{short_id}] Status check after engine failure raised: {status_error}")
            status = "missing"

        if status != "running":
            self._mark_failed()
            return MCPEnvironmentDeadError(f"Container {short_id} is not alive (status: {status}): {error}")
        return MCPConnectionError(f"Container {short_id} I/O failed: {error}")

    def _mark_failed(self) -> None:
        if self._state == EnvironmentState.RUNNING:
            self._state = EnvironmentState.FAILED

    def _drain(
        self,
        stream: ContainerStream,
        on_line: Callable[[str], None],
        until: Optional[Callable[[], bool]],
        short_id: str,
    ) -> None:
        buffers = {STDOUT: b"", STDERR: b""}
        for stream_id, chunk in stream.frames():
            if stream_id not in buffers:
                continue
            parts = (buffers[stream_id] + chunk).split(b"\n")
            buffers[stream_id] = parts.pop()

            for raw in parts:
                line = raw.decode("utf-8", errors="replace").rstrip("\r")
                if stream_id == STDERR:
                    if self.log_events:
                        logger.debug(f"[{short_id}] stderr: {line}")
                    continue
                if self.log_events:
                    logger.debug(f"[{short_id}] << {line}")
                on_line(line)

            if until is not None and until():
                return

        if until is not None and not until():
            raise MCPEnvironmentDeadError(f"Output of container {short_id} ended before the response arrived")

    async def check_health(self) -> None:
        """Raise MCPEnvironmentDeadError unless the container is running."""
        handle = self._require_running()
        status = await asyncio.to_thread(self._runtime.status, handle.environment_id)
        if status != "running":
            self._mark_failed()
            raise MCPEnvironmentDeadError(f"Container is not alive (status: {status})")

    async def close(self) -> None:
        """Kill then remove the container.

        A failed remove is logged. A failed kill is re-raised once the handle
        has been released. Calling close again is a no-op.
        """
        if self._state in (EnvironmentState.CLOSING, EnvironmentState.CLOSED):
            return

        handle = self._handle
        self._state = EnvironmentState.CLOSING
        try:
            if handle is None:
                return
            await asyncio.to_thread(self._runtime.kill, handle.environment_id)
            try:
                await asyncio.to_thread(self._runtime.remove, handle.environment_id)
            except Exception as e:
                logger.warning(f"Failed to remove container {handle.environment_id[:12]}: {e}")
            logger.info(f"Closed container {handle.environment_id[:12]}")
        finally:
            self._handle = None
            self._state = EnvironmentState.CLOSED

"""MCP transport implementations.

``BaseMCPTransport`` implements the client side of the protocol once:
sequential request ids, response correlation, the initialize handshake,
health checks and failure callbacks. Subclasses only move encoded frames
to and from the server:

- ``DockerTransport`` runs the server in a container and re-attaches to it
  for every exchange.
- ``StdioTransport`` runs the server as a local subprocess over a
  long-lived pipe.
- ``SSETransport`` talks to a remote server over HTTP POST + Server-Sent
  Events.
"""

import asyncio
import inspect
import itertools
import logging
import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from urllib.parse import urljoin

import aiohttp

from mcpbridge.core.settings.settings import get_settings

from .base import (
    MCPConnectionError,
    MCPEnvironmentDeadError,
    MCPError,
    MCPInitializeParams,
    MCPInitializeResult,
    MCPMalformedFrameError,
    MCPMessage,
    MCPMessageType,
    MCPNotification,
    MCPRequest,
    MCPRequestTimeoutError,
    MCPStartFailureError,
    MCPStartTimeoutError,
    MCPTransport,
    decode_frame,
    encode_frame,
)
from .correlator import RequestCorrelator
from .runtime import ContainerConfig, ContainerEnvironment, ContainerRuntime, DockerContainerRuntime, DockerRuntimeSettings

if TYPE_CHECKING:
    from .client.provider import MCPClientSettings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[MCPMessage], Union[None, Awaitable[None]]]
FailureCallback = Callable[[MCPEnvironmentDeadError], Union[None, Awaitable[None]]]

INITIALIZED_NOTIFICATION = "notifications/initialized"


class BaseMCPTransport(ABC):
    """Client side of an MCP connection.

    Requests on one transport are expected to be issued one at a time by
    the owning caller; concurrent requests are not serialized here.
    """

    def __init__(self, request_timeout: float = 60.0):
        self.request_timeout = request_timeout
        self._correlator = RequestCorrelator()
        self._ids = itertools.count(1)
        self._message_handler: Optional[MessageHandler] = None
        self._failure_callbacks: List[FailureCallback] = []
        self._background: Set[asyncio.Future] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False
        self._closed = False
        self._dead: Optional[MCPEnvironmentDeadError] = None

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def alive(self) -> bool:
        return self._started and not self._closed and self._dead is None

    async def start(self, message_handler: Optional[MessageHandler] = None) -> None:
        """Start the server side and begin routing incoming frames.

        Args:
            message_handler: Receives server-initiated requests and
                notifications. Responses never reach it.
        """
        if self._started:
            raise MCPConnectionError("Transport already started")
        if self._closed:
            raise MCPConnectionError("Transport closed")

        self._loop = asyncio.get_running_loop()
        self._message_handler = message_handler
        self._started = True
        try:
            await self._start()
        except Exception:
            self._closed = True
            try:
                await self._close()
            except Exception as cleanup_error:
                logger.warning(f"Cleanup after failed start raised: {cleanup_error}")
            raise
        logger.debug(f"{self.__class__.__name__} started")

    async def initialize(
        self, params: Union[MCPInitializeParams, Dict[str, Any], None] = None
    ) -> MCPInitializeResult:
        """Run the initialize handshake.

        Sends ``initialize``, then acknowledges the response with a
        ``notifications/initialized`` notification before returning it.
        """
        if params is None:
            params = MCPInitializeParams()
        payload = params.model_dump(exclude_none=True) if isinstance(params, MCPInitializeParams) else params

        result = await self.send_request("initialize", payload)
        await self.send_notification(INITIALIZED_NOTIFICATION)

        info = MCPInitializeResult.model_validate(result or {})
        logger.info(
            f"MCP handshake completed with '{info.serverInfo.get('name', 'unknown')}' "
            f"(protocol {info.protocolVersion})"
        )
        return info

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its correlated response.

        Returns:
            The ``result`` member of the response

        Raises:
            MCPError: If the server answered with an error object
            MCPRequestTimeoutError: If no response arrived within ``timeout``
            MCPConnectionError: If the transport is not usable
        """
        self._ensure_open()
        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        request = MCPRequest(id=request_id, method=method, params=params)

        future = loop.create_future()
        self._correlator.start_operation(request_id, future)

        limit = timeout if timeout is not None else self.request_timeout
        try:
            response = await asyncio.wait_for(
                self._round_trip(encode_frame(request), request_id, future), timeout=limit
            )
        except asyncio.TimeoutError:
            logger.warning(f"Request {request_id} '{method}' timed out after {limit}s")
            raise MCPRequestTimeoutError(method, limit, request_id) from None
        finally:
            self._correlator.discard(request_id)

        if response.error is not None:
            raise MCPError.from_response_error(response.error)
        return response.result

    async def _round_trip(self, line: str, request_id: int, future: asyncio.Future) -> MCPMessage:
        exchange = asyncio.ensure_future(self._exchange(line, request_id))
        try:
            await asyncio.wait({future, exchange}, return_when=asyncio.FIRST_COMPLETED)
            if not future.done():
                error = exchange.exception()
                if error is not None:
                    if isinstance(error, MCPEnvironmentDeadError):
                        self._handle_environment_death(error)
                    raise error
            return await future
        finally:
            if not exchange.done():
                exchange.cancel()
            await asyncio.gather(exchange, return_exceptions=True)
            if not future.done():
                future.cancel()

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification. Nothing is awaited from the server."""
        self._ensure_open()
        line = encode_frame(MCPNotification(method=method, params=params))
        try:
            await self._notify(line)
        except MCPEnvironmentDeadError as e:
            self._handle_environment_death(e)
            raise

    async def check_health(self) -> None:
        """Raise MCPEnvironmentDeadError unless the server side is alive."""
        self._ensure_open()
        try:
            await self._check_health()
        except MCPEnvironmentDeadError as e:
            self._handle_environment_death(e)
            raise

    def on_failure(self, callback: FailureCallback) -> None:
        """Register a callback run once when the server side is found dead."""
        self._failure_callbacks.append(callback)

    async def close(self) -> None:
        """Fail pending requests and tear the server side down.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        failed = self._correlator.fail_all(MCPConnectionError("Transport closed"))
        if failed:
            logger.info(f"Failed {failed} pending request(s) on close")

        if self._started:
            await self._close()
        logger.debug(f"{self.__class__.__name__} closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise MCPConnectionError("Connection closed")
        if not self._started:
            raise MCPConnectionError("Transport not started")
        if self._dead is not None:
            raise MCPEnvironmentDeadError(self._dead.reason)

    def _handle_line(self, line: str) -> None:
        """Route one line of server output. May run on a worker thread."""
        if not line.strip():
            return
        try:
            message = decode_frame(line)
        except MCPMalformedFrameError as e:
            logger.warning(f"Dropping {e.message}: {line[:200]!r}")
            return

        if message.message_type == MCPMessageType.RESPONSE:
            self._correlator.resolve(message.id, message)
        else:
            self._dispatch(message)

    def _dispatch(self, message: MCPMessage) -> None:
        if self._message_handler is None:
            logger.debug(f"No handler for server {message.message_type.value} '{message.method}'")
            return
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._run_callback, self._message_handler, message)

    def _run_callback(self, callback: Callable[[Any], Any], argument: Any) -> None:
        try:
            result = callback(argument)
        except Exception as e:
            logger.warning(f"Callback {getattr(callback, '__name__', callback)!s} raised: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._finish_background)

    def _finish_background(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background callback raised: {task.exception()}")

    def _handle_environment_death(self, error: MCPEnvironmentDeadError) -> None:
        if self._dead is not None or self._closed:
            return
        self._dead = error
        logger.error(f"MCP server environment died: {error.message}")
        self._correlator.fail_all(error)
        for callback in list(self._failure_callbacks):
            self._run_callback(callback, error)

    @abstractmethod
    async def _start(self) -> None:
        """Bring the server side up."""

    @abstractmethod
    async def _exchange(self, line: str, request_id: int) -> None:
        """Deliver a request frame.

        May return as soon as the frame is written, or keep reading until
        ``request_id`` is no longer pending.
        """

    @abstractmethod
    async def _notify(self, line: str) -> None:
        """Deliver a notification frame."""

    @abstractmethod
    async def _check_health(self) -> None:
        """Raise MCPEnvironmentDeadError if the server side is gone."""

    @abstractmethod
    async def _close(self) -> None:
        """Release everything acquired by ``_start``."""


class DockerTransport(BaseMCPTransport):
    """Transport to a server running in a container, attached per call."""

    def __init__(
        self,
        image: str,
        command: Optional[List[str]] = None,
        environment: Optional[Dict[str, str]] = None,
        *,
        runtime: Optional[ContainerRuntime] = None,
        runtime_settings: Optional[DockerRuntimeSettings] = None,
        start_timeout: float = 30.0,
        notification_grace: float = 0.1,
        request_timeout: float = 60.0,
        log_events: bool = False,
    ):
        super().__init__(request_timeout=request_timeout)
        self.config = ContainerConfig(image=image, command=list(command or []), environment=dict(environment or {}))
        self._owned_runtime = DockerContainerRuntime(runtime_settings) if runtime is None else None
        self.environment = ContainerEnvironment(
            runtime or self._owned_runtime,
            start_timeout=start_timeout,
            notification_grace=notification_grace,
            log_events=log_events,
        )

    async def _start(self) -> None:
        await self.environment.start(self.config)

    async def _exchange(self, line: str, request_id: int) -> None:
        await self.environment.attach_stream(
            line,
            on_line=self._handle_line,
            until=lambda: not self._correlator.is_pending(request_id),
        )

    async def _notify(self, line: str) -> None:
        await self.environment.attach_stream(line, on_line=self._handle_line)

    async def _check_health(self) -> None:
        await self.environment.check_health()

    async def _close(self) -> None:
        try:
            await self.environment.close()
        finally:
            if self._owned_runtime is not None:
                try:
                    self._owned_runtime.close()
                except Exception as e:
                    logger.warning(f"Error closing Docker client: {e}")


class StdioTransport(BaseMCPTransport):
    """STDIO transport to a local server process."""

    def __init__(
        self,
        server_command: str,
        server_args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        *,
        request_timeout: float = 60.0,
        log_events: bool = False,
        shutdown_timeout: float = 5.0,
        read_limit: int = 16 * 1024 * 1024,
    ):
        super().__init__(request_timeout=request_timeout)
        self.server_command = server_command
        self.server_args = server_args or []
        self.env = env or {}
        self.log_events = log_events
        self.shutdown_timeout = shutdown_timeout
        self.read_limit = read_limit
        self.process: Optional[asyncio.subprocess.Process] = None
        self._readers: List[asyncio.Task] = []

    async def _start(self) -> None:
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.server_command,
                *self.server_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env} if self.env else None,
                limit=self.read_limit,
            )
        except OSError as e:
            raise MCPStartFailureError(f"Failed to start MCP server process: {e}") from e

        logger.debug(f"Started MCP server process {self.process.pid}: {self.server_command}")
        self._readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]

    async def _read_stdout(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except ValueError as e:
                logger.warning(f"Dropping oversized line from server: {e}")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace")
            if self.log_events:
                logger.debug(f"<< {line.rstrip()}")
            self._handle_line(line)

        if not self._closed:
            self._handle_environment_death(MCPEnvironmentDeadError("Server process ended"))

    async def _read_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        stderr = self.process.stderr
        while True:
            try:
                raw = await stderr.readline()
            except ValueError:
                continue
            if not raw:
                return
            if self.log_events:
                logger.debug(f"stderr: {raw.decode('utf-8', errors='replace').rstrip()}")

    async def _write(self, line: str) -> None:
        if self.process is None or self.process.stdin is None:
            raise MCPConnectionError("Connection closed")
        if self.log_events:
            logger.debug(f">> {line.rstrip()}")
        try:
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise MCPEnvironmentDeadError(f"Failed to send message: {e}") from e

    async def _exchange(self, line: str, request_id: int) -> None:
        await self._write(line)

    async def _notify(self, line: str) -> None:
        await self._write(line)

    async def _check_health(self) -> None:
        if self.process is None or self.process.returncode is not None:
            code = self.process.returncode if self.process else None
            raise MCPEnvironmentDeadError(f"Server process is not alive (exit code: {code})")

    async def _close(self) -> None:
        process, self.process = self.process, None
        if process is not None:
            try:
                if process.stdin:
                    process.stdin.close()
                    await process.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                # Force terminate if it doesn't exit gracefully
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            except Exception as e:
                logger.warning(f"Error closing MCP process: {e}")
            logger.debug("MCP server process terminated")

        for reader in self._readers:
            reader.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []


class SSETransport(BaseMCPTransport):
    """Server-Sent Events transport for MCP.

    The event stream first announces an ``endpoint`` to POST frames to;
    responses and server messages then arrive as ``message`` events.
    """

    def __init__(
        self,
        sse_url: str,
        auth_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        *,
        start_timeout: float = 30.0,
        request_timeout: float = 60.0,
        log_requests: bool = False,
        log_responses: bool = False,
    ):
        super().__init__(request_timeout=request_timeout)
        self.sse_url = sse_url
        self.auth_token = auth_token
        self.headers = headers or {}
        self.start_timeout = start_timeout
        self.log_requests = log_requests
        self.log_responses = log_responses
        self.endpoint: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._listener: Optional[asyncio.Task] = None
        self._endpoint_ready: Optional[asyncio.Future] = None

    def _request_headers(self, extra: Dict[str, str]) -> Dict[str, str]:
        headers = self.headers.copy()
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        headers.update(extra)
        return headers

    async def _start(self) -> None:
        self._session = aiohttp.ClientSession()
        self._endpoint_ready = asyncio.get_running_loop().create_future()

        try:
            self._response = await asyncio.wait_for(
                self._session.get(
                    self.sse_url,
                    headers=self._request_headers({"Accept": "text/event-stream", "Cache-Control": "no-cache"}),
                    timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
                ),
                timeout=self.start_timeout,
            )
        except asyncio.TimeoutError:
            raise MCPStartTimeoutError(f"SSE server {self.sse_url} did not respond within {self.start_timeout} seconds") from None
        except aiohttp.ClientError as e:
            raise MCPStartFailureError(f"Failed to connect to SSE server: {e}") from e

        if self._response.status >= 400:
            raise MCPStartFailureError(f"SSE server returned HTTP {self._response.status}")

        self._listener = asyncio.create_task(self._listen())
        try:
            await asyncio.wait_for(asyncio.shield(self._endpoint_ready), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            raise MCPStartTimeoutError(
                f"SSE server did not announce a message endpoint within {self.start_timeout} seconds"
            ) from None
        except MCPEnvironmentDeadError as e:
            raise MCPStartFailureError(f"SSE stream closed before the endpoint was announced: {e.message}") from e

        logger.debug(f"Connected to MCP SSE server {self.sse_url}, posting to {self.endpoint}")

    async def _listen(self) -> None:
        assert self._response is not None
        event, data_lines = "message", []
        try:
            async for raw in self._response.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    if data_lines:
                        self._handle_event(event, "\n".join(data_lines))
                    event, data_lines = "message", []
                    continue
                if line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if field == "event":
                    event = value
                elif field == "data":
                    data_lines.append(value)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if not self._closed:
                logger.warning(f"Error listening for SSE events: {e}")

        if not self._closed:
            error = MCPEnvironmentDeadError("SSE stream closed")
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(error)
            self._handle_environment_death(error)

    def _handle_event(self, event: str, data: str) -> None:
        if event == "endpoint":
            self.endpoint = urljoin(self.sse_url, data.strip())
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_result(self.endpoint)
        elif event == "message":
            if self.log_responses:
                logger.debug(f"<< {data}")
            self._handle_line(data)
        else:
            logger.debug(f"Ignoring SSE event '{event}'")

    async def _post(self, line: str) -> None:
        if self._session is None or self.endpoint is None:
            raise MCPConnectionError("Connection closed")
        if self.log_requests:
            logger.debug(f">> {line.rstrip()}")
        try:
            async with self._session.post(
                self.endpoint,
                data=line.encode("utf-8"),
                headers=self._request_headers({"Content-Type": "application/json"}),
            ) as response:
                if response.status >= 400:
                    raise MCPConnectionError(f"HTTP {response.status}: {await response.text()}")
        except aiohttp.ClientError as e:
            raise MCPConnectionError(f"Failed to send message: {e}") from e

    async def _exchange(self, line: str, request_id: int) -> None:
        await self._post(line)

    async def _notify(self, line: str) -> None:
        await self._post(line)

    async def _check_health(self) -> None:
        if self._listener is None or self._listener.done():
            raise MCPEnvironmentDeadError("SSE stream closed")

    async def _close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None

        if self._response is not None:
            self._response.close()
            self._response = None

        if self._session:
            try:
                await self._session.close()
            except Exception as e:
                logger.warning(f"Error closing SSE session: {e}")
            finally:
                self._session = None


def create_transport(settings: "MCPClientSettings") -> BaseMCPTransport:
    """Build the transport variant selected by ``settings.transport``.

    The transport is returned unstarted. Values left unset in ``settings``
    fall back to the process-wide ``BridgeSettings``.
    """
    defaults = get_settings()
    start_timeout = settings.timeout if settings.timeout is not None else defaults.start_timeout
    request_timeout = settings.request_timeout if settings.request_timeout is not None else defaults.request_timeout
    log_events = settings.log_events if settings.log_events is not None else defaults.log_events

    if settings.transport == MCPTransport.DOCKER:
        if not settings.image:
            raise MCPConnectionError("image required for DOCKER transport")
        return DockerTransport(
            image=settings.image,
            command=settings.command,
            environment=settings.environment,
            runtime_settings=DockerRuntimeSettings(
                docker_host=settings.docker_host,
                docker_config=settings.docker_config,
                docker_context=settings.docker_context,
                docker_cert_path=settings.docker_cert_path,
                docker_tls_verify=settings.docker_tls_verify,
                registry_email=settings.registry_email,
                registry_username=settings.registry_username,
                registry_password=settings.registry_password,
                registry_url=settings.registry_url,
                api_version=settings.api_version,
            ),
            start_timeout=start_timeout,
            notification_grace=defaults.notification_grace,
            request_timeout=request_timeout,
            log_events=log_events,
        )

    if settings.transport == MCPTransport.STDIO:
        if not settings.server_command:
            raise MCPConnectionError("server_command required for STDIO transport")
        return StdioTransport(
            settings.server_command,
            settings.server_args,
            settings.env,
            request_timeout=request_timeout,
            log_events=log_events,
        )

    if settings.transport == MCPTransport.SSE:
        if not settings.sse_url:
            raise MCPConnectionError("sse_url required for SSE transport")
        return SSETransport(
            settings.sse_url,
            settings.auth_token,
            settings.headers,
            start_timeout=start_timeout,
            request_timeout=request_timeout,
            log_requests=log_events,
            log_responses=log_events,
        )

    raise MCPConnectionError(f"Unsupported transport type: {settings.transport}")

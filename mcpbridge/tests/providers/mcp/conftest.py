"""In-memory container runtime serving a small MCP ``add`` server.

The fake stands in for the Docker engine: it tracks container status and
kill/remove calls, and every attach returns a stream whose writes are
answered by ``FakeAddServer`` on the same stream.
"""

import itertools
import json
import queue
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

from mcpbridge.providers.mcp.runtime import ContainerConfig
from mcpbridge.providers.mcp.transport import DockerTransport

STDOUT = 1
STDERR = 2
_EOF = object()

ADD_TOOL = {
    "name": "add",
    "description": "Add two integers",
    "inputSchema": {
        "type": "object",
        "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
        "required": ["a", "b"],
    },
}


class FakeAddServer:
    """Answers MCP requests the way a real tool server would.

    ``slow`` requests are never answered and ``die`` requests end the
    stream. With ``garbage`` a non-JSON line precedes every response,
    with ``split_frames`` each response arrives in two chunks and with
    ``echo_notifications`` every notification is answered by a
    ``notifications/message`` frame on stdout.
    """

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        garbage: bool = False,
        split_frames: bool = False,
        notify_first: bool = False,
        echo_notifications: bool = False,
    ):
        self.tools = tools if tools is not None else [ADD_TOOL]
        self.echo_notifications = echo_notifications
        self.garbage = garbage
        self.split_frames = split_frames
        self.notify_first = notify_first
        self.received: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def handle(self, line: str) -> List[Any]:
        message = json.loads(line)
        with self._lock:
            self.received.append(message)

        method = message.get("method")
        request_id = message.get("id")
        if request_id is None:
            output = [(STDERR, f"got notification {method}\n".encode())]
            if self.echo_notifications:
                echo = {"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info", "data": method}}
                output.append((STDOUT, (json.dumps(echo) + "\n").encode()))
            return output
        if method == "slow":
            return []
        if method == "die":
            return [_EOF]

        if method == "initialize":
            frame = self._result(request_id, {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-add", "version": "0.1"},
            })
        elif method == "tools/list":
            frame = self._result(request_id, {"tools": self.tools})
        elif method == "tools/call":
            params = message.get("params") or {}
            arguments = params.get("arguments") or {}
            if params.get("name") != "add":
                frame = {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Unknown tool"}}
            elif "a" not in arguments or "b" not in arguments:
                frame = self._result(request_id, {
                    "content": [{"type": "text", "text": "missing operand"}],
                    "isError": True,
                })
            else:
                total = arguments["a"] + arguments["b"]
                frame = self._result(request_id, {"content": [{"type": "text", "text": str(total)}]})
        else:
            frame = {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}}

        output: List[Any] = []
        if self.notify_first:
            notification = {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}
            output.append((STDOUT, (json.dumps(notification) + "\n").encode()))
        if self.garbage:
            output.append((STDOUT, b"this is not json\n"))

        data = (json.dumps(frame) + "\n").encode()
        if self.split_frames:
            middle = len(data) // 2
            output.extend([(STDOUT, data[:middle]), (STDOUT, data[middle:])])
        else:
            output.append((STDOUT, data))
        return output

    @staticmethod
    def _result(request_id: int, result: Dict[str, Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}


class FakeStream:
    """One attach session; ``frames`` blocks until output or close."""

    def __init__(self, server: FakeAddServer):
        self._server = server
        self._output: "queue.Queue[Any]" = queue.Queue()
        self.written: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written.append(data)
        for line in data.decode().splitlines():
            if line.strip():
                for item in self._server.handle(line):
                    self._output.put(item)

    def frames(self) -> Iterator[Tuple[int, bytes]]:
        while True:
            item = self._output.get()
            if item is _EOF:
                return
            yield item

    def close(self) -> None:
        self.closed = True
        self._output.put(_EOF)


class FakeContainerRuntime:
    """In-memory ContainerRuntime with recorded calls."""

    def __init__(
        self,
        server: Optional[FakeAddServer] = None,
        status_on_start: str = "running",
        pending_polls: int = 0,
        create_error: Optional[Exception] = None,
        kill_error: Optional[Exception] = None,
        remove_error: Optional[Exception] = None,
        attach_error: Optional[Exception] = None,
    ):
        self.server = server or FakeAddServer()
        self.status_on_start = status_on_start
        self.pending_polls = pending_polls
        self.create_error = create_error
        self.kill_error = kill_error
        self.remove_error = remove_error
        self.attach_error = attach_error
        self.configs: Dict[str, ContainerConfig] = {}
        self.statuses: Dict[str, str] = {}
        self.streams: List[FakeStream] = []
        self.killed: List[str] = []
        self.removed: List[str] = []
        self._ids = itertools.count(1)

    def create(self, config: ContainerConfig) -> str:
        if self.create_error is not None:
            raise self.create_error
        environment_id = f"fake{next(self._ids):012d}"
        self.configs[environment_id] = config
        self.statuses[environment_id] = "created"
        return environment_id

    def start(self, environment_id: str) -> None:
        self.statuses[environment_id] = self.status_on_start

    def status(self, environment_id: str) -> str:
        if self.pending_polls > 0:
            self.pending_polls -= 1
            return "created"
        return self.statuses.get(environment_id, "missing")

    def attach(self, environment_id: str) -> FakeStream:
        if self.attach_error is not None:
            raise self.attach_error
        stream = FakeStream(self.server)
        self.streams.append(stream)
        return stream

    def kill(self, environment_id: str) -> None:
        self.killed.append(environment_id)
        if self.kill_error is not None:
            raise self.kill_error
        if environment_id in self.statuses:
            self.statuses[environment_id] = "exited"

    def remove(self, environment_id: str) -> None:
        self.removed.append(environment_id)
        if self.remove_error is not None:
            raise self.remove_error
        self.statuses.pop(environment_id, None)

    def stop_all(self) -> None:
        """Simulate the server process exiting on its own."""
        for environment_id in self.statuses:
            self.statuses[environment_id] = "exited"


@pytest.fixture
def add_server():
    return FakeAddServer()


@pytest.fixture
def fake_runtime(add_server):
    return FakeContainerRuntime(add_server)


@pytest.fixture
async def make_docker_transport(fake_runtime):
    """Build DockerTransports over the fake runtime, closing them afterwards."""
    transports: List[DockerTransport] = []

    def _make(**kwargs: Any) -> DockerTransport:
        options = {
            "runtime": fake_runtime,
            "start_timeout": 1.0,
            "notification_grace": 0.01,
            "request_timeout": 2.0,
        }
        options.update(kwargs)
        transport = DockerTransport("mcp/add:latest", **options)
        transports.append(transport)
        return transport

    yield _make

    fake_runtime.kill_error = None
    for transport in transports:
        await transport.close()


@pytest.fixture
async def docker_transport(make_docker_transport):
    """A started and initialized DockerTransport."""
    transport = make_docker_transport()
    await transport.start()
    await transport.initialize()
    yield transport
    await transport.close()

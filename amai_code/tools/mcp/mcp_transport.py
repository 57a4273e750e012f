"""
MCP Transports — byte channels carrying JSON-RPC messages to and from a server.

StdioTransport (primary):
  spawns the server as a child process with three pipes; writes one JSON
  message per line to stdin; decodes stdout as UTF-8, buffers it, splits on
  newlines and parses each non-blank line independently; logs stderr.

HttpTransport (http / sse):
  POSTs each message with aiohttp. Replies arrive either in the POST
  response body (http) or on a long-lived event stream (sse). Both feed the
  same inbound message iterator as stdio.

Every transport exposes the same contract:
  start() → send(message) ... / async for message in messages() → close()
"""

import asyncio
import codecs
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import aiohttp

from amai_code.tools.mcp.mcp_errors import MCPConnectionError, MCPLaunchError
from amai_code.tools.mcp.mcp_protocol import parse_message

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

# Teardown: EOF on stdin, then terminate, then kill
CLOSE_TIMEOUT = 5.0
KILL_TIMEOUT = 3.0

HTTP_TIMEOUT = 30.0


class JSONLineBuffer:
    """Incremental newline-delimited JSON decoder.

    Bytes may be split anywhere (including inside a multi-byte UTF-8
    sequence); only complete lines are parsed. Lines that are not JSON
    objects are dropped with a warning.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """Add bytes and return the messages completed by them."""
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _parse_lines(lines: List[str]) -> List[Dict[str, Any]]:
        messages = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            message = parse_message(line)
            if message is not None:
                messages.append(message)
        return messages


class MCPTransport(ABC):
    """Abstract byte channel for one MCP server connection."""

    @abstractmethod
    async def start(self) -> None:
        """Open the channel.

        Raises:
            MCPLaunchError: If the channel cannot be opened
        """
        ...

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Write one JSON-RPC message.

        Raises:
            MCPConnectionError: If the channel is not writable
        """
        ...

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield inbound messages until the channel ends."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        ...

    @abstractmethod
    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the channel to end and return its exit code.

        0 means a clean end, anything else an error. None means the channel
        was still open when the timeout expired.
        """
        ...


class StdioTransport(MCPTransport):
    """Child-process transport: JSON lines over stdin/stdout.

    Usage:
        transport = StdioTransport("npx", ["-y", "@modelcontextprotocol/server-git"])
        await transport.start()
        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        async for message in transport.messages():
            ...
        await transport.close()
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        name: str = "",
    ):
        self.command = command
        self.args = args or []
        self.env = env or {}
        self.name = name or command

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._buffer = JSONLineBuffer()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        if not self.command:
            raise MCPLaunchError("Command is required for stdio transport")

        # Inherit current env + add overrides
        process_env = {**os.environ, **self.env}

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except (OSError, ValueError) as e:
            raise MCPLaunchError(
                f"Failed to launch MCP server '{self.name}' ({self.command}): {e}"
            ) from e

        logger.info(
            f"MCP server started: {self.command} {' '.join(self.args)} "
            f"(pid={self._process.pid})"
        )

        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._process.stderr))

    async def send(self, message: Dict[str, Any]) -> None:
        process = self._process
        stdin = process.stdin if process else None
        if stdin is None or stdin.is_closing() or process.returncode is not None:
            raise MCPConnectionError("No process stdin available")

        line = json.dumps(message) + "\n"
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except ConnectionError as e:
            raise MCPConnectionError(f"Failed to write to MCP server '{self.name}': {e}") from e

        logger.debug(f"MCP → {message.get('method', 'response')} (id={message.get('id', 'N/A')})")

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        if not self._process or not self._process.stdout:
            raise MCPConnectionError("Stdio transport not started")

        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for message in self._buffer.feed(chunk):
                yield message

        for message in self._buffer.flush():
            yield message

        logger.debug(f"MCP server '{self.name}' closed stdout")

    async def close(self) -> None:
        """Gracefully shut down the child process."""
        process = self._process
        if process is None:
            return

        try:
            # Close stdin to signal EOF
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()
                try:
                    await process.stdin.wait_closed()
                except ConnectionError:
                    pass  # Already gone

            if process.returncode is None:
                try:
                    await asyncio.wait_for(process.wait(), timeout=CLOSE_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.warning(f"MCP server '{self.name}' did not exit gracefully, terminating")
                    process.terminate()
                    try:
                        await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
                    except asyncio.TimeoutError:
                        logger.warning(f"MCP server '{self.name}' did not terminate, killing")
                        process.kill()
                        await process.wait()

        except ProcessLookupError:
            pass  # Already exited

        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()

        logger.info(f"MCP server stopped: {self.name} (exit code {process.returncode})")

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._process is None:
            return None
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def _drain_stderr(self, stderr: asyncio.StreamReader) -> None:
        """Surface server stderr as warnings. Never protocol data."""
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                # Line longer than the stream limit; the reader discarded it
                logger.debug(f"MCP server '{self.name}' wrote an oversized stderr line")
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning(f"MCP server stderr ({self.name}): {text}")


async def iter_sse_events(lines) -> AsyncIterator[Tuple[str, str]]:
    """Parse a Server-Sent Events byte stream into (event, data) pairs.

    Args:
        lines: Async iterable of raw lines (e.g. aiohttp response.content)
    """
    event_type, data_lines = "message", []
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event_type, "\n".join(data_lines)
            event_type, data_lines = "message", []
            continue
        if line.startswith(":"):
            continue  # Comment / keepalive
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event_type = value
        elif field_name == "data":
            data_lines.append(value)

    if data_lines:
        yield event_type, "\n".join(data_lines)


class HttpTransport(MCPTransport):
    """JSON-RPC over HTTP POST, with an optional SSE event stream.

    http: each POST response body (JSON or an event stream) carries the
          replies; the Mcp-Session-Id header from the server is echoed back.
    sse:  GET on the configured URL opens an event stream. Its first
          'endpoint' event names the POST URL; 'message' events carry replies
          and server notifications.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        use_sse: bool = False,
        name: str = "",
    ):
        self.url = url.rstrip("/") if url else ""
        self.headers = headers or {}
        self.use_sse = use_sse
        self.name = name or self.url

        self._session: Optional[aiohttp.ClientSession] = None
        self._endpoint: Optional[str] = None
        self._session_id: Optional[str] = None
        self._stream_response: Optional[aiohttp.ClientResponse] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._inbound: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()
        self._ended = asyncio.Event()
        self._returncode: Optional[int] = None

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    async def start(self) -> None:
        if not self.url:
            raise MCPLaunchError(f"URL is required for {'sse' if self.use_sse else 'http'} transport")

        self._session = aiohttp.ClientSession(headers=self.headers)

        if not self.use_sse:
            self._endpoint = self.url
            logger.info(f"MCP HTTP transport ready: {self.url}")
            return

        try:
            await asyncio.wait_for(self._open_event_stream(), timeout=HTTP_TIMEOUT)
        except MCPLaunchError:
            await self.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self.close()
            raise MCPLaunchError(f"Failed to open SSE stream {self.url}: {e}") from e

        logger.info(f"MCP SSE transport ready: {self.url} (endpoint {self._endpoint})")

    async def _open_event_stream(self) -> None:
        response = await self._session.get(
            self.url,
            headers={"Accept": "text/event-stream"},
        )
        if response.status != 200:
            response.release()
            raise MCPLaunchError(f"SSE endpoint {self.url} returned HTTP {response.status}")

        self._stream_response = response
        events = iter_sse_events(response.content)

        async for event_type, data in events:
            if event_type == "endpoint":
                self._endpoint = urljoin(self.url, data.strip())
                break
            logger.debug(f"Ignoring SSE event before endpoint: {event_type}")

        if self._endpoint is None:
            raise MCPLaunchError(f"SSE stream {self.url} ended before announcing an endpoint")

        self._stream_task = asyncio.create_task(self._pump_events(events))

    async def _pump_events(self, events) -> None:
        try:
            async for event_type, data in events:
                if event_type == "message":
                    self._enqueue_text(data)
        except aiohttp.ClientError as e:
            logger.warning(f"MCP SSE stream {self.url} failed: {e}")
        finally:
            if self._returncode is None:
                # Stream dropped without close()
                self._finish(1)

    async def send(self, message: Dict[str, Any]) -> None:
        if self._session is None or self._endpoint is None or self._ended.is_set():
            raise MCPConnectionError(f"HTTP transport to '{self.name}' not connected")

        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id

        try:
            async with self._session.post(
                self._endpoint,
                json=message,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise MCPConnectionError(f"MCP HTTP {resp.status}: {body[:200]}")

                session_id = resp.headers.get("Mcp-Session-Id")
                if session_id and session_id != self._session_id:
                    self._session_id = session_id
                    logger.debug(f"MCP HTTP session id: {session_id}")

                # sse: replies arrive on the event stream; 202: accepted, no body
                if self.use_sse or resp.status == 202:
                    return

                if resp.content_type == "text/event-stream":
                    async for event_type, data in iter_sse_events(resp.content):
                        if event_type == "message":
                            self._enqueue_text(data)
                elif resp.content_type == "application/json":
                    self._enqueue_payload(await resp.json())

        except aiohttp.ClientError as e:
            raise MCPConnectionError(
                f"HTTP error on {message.get('method', 'response')}: {e}"
            ) from e
        except asyncio.TimeoutError as e:
            raise MCPConnectionError(
                f"HTTP timeout on {message.get('method', 'response')}"
            ) from e

        logger.debug(f"MCP → {message.get('method', 'response')} (id={message.get('id', 'N/A')})")

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            message = await self._inbound.get()
            if message is None:
                break
            yield message

    async def close(self) -> None:
        if self._stream_task and not self._stream_task.done():
            self._stream_task.cancel()
        if self._stream_response is not None:
            self._stream_response.release()
            self._stream_response = None
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._finish(0)

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            await asyncio.wait_for(self._ended.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._returncode

    def _finish(self, returncode: int) -> None:
        if self._returncode is None:
            self._returncode = returncode
            self._ended.set()
            self._inbound.put_nowait(None)

    def _enqueue_text(self, data: str) -> None:
        message = parse_message(data)
        if message is not None:
            self._inbound.put_nowait(message)

    def _enqueue_payload(self, payload: Any) -> None:
        # A JSON-RPC batch arrives as a list
        items = payload if isinstance(payload, list) else [payload]
        for item in items:
            if isinstance(item, dict):
                self._inbound.put_nowait(item)
            else:
                logger.warning(f"MCP: Ignoring non-object JSON message from {self.name}")


def create_transport(config) -> MCPTransport:
    """Build the transport named by a server config.

    Args:
        config: MCPServerConfig

    Raises:
        MCPLaunchError: On an unsupported transport kind
    """
    if config.transport == "stdio":
        return StdioTransport(
            command=config.command,
            args=config.args,
            env=config.env,
            name=config.name,
        )
    if config.transport in ("http", "sse"):
        return HttpTransport(
            url=config.url,
            headers=config.headers,
            use_sse=config.transport == "sse",
            name=config.name,
        )
    raise MCPLaunchError(
        f"MCP server '{config.name}' uses unsupported transport '{config.transport}'"
    )

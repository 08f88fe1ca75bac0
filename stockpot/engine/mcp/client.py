"""Line-delimited JSON channel to one tool server process.

Wire format, one JSON object per line:

    request   {"id": 7, "method": "call_tool", "params": {...}}
    response  {"id": 7, "result": ...}   or   {"id": 7, "error": "..."}

Requests are serialized: one in flight per channel. A response whose
id does not match the pending request (for example the late answer to
a request that timed out) is discarded, as is any line that is not a
JSON object. After close() every request fails fast.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from ..errors import ServerUnavailableError, ToolServerError

logger = logging.getLogger(__name__)


class ToolServerChannel:
    def __init__(
        self,
        server_name: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        request_timeout: float = 120.0,
    ) -> None:
        self._server = server_name
        self._reader = reader
        self._writer = writer
        self._request_timeout = request_timeout
        self._req_id = 0
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting requests and close the server's stdin."""
        if self._closed:
            return
        self._closed = True
        try:
            self._writer.close()
        except (OSError, RuntimeError):
            logger.debug("Closing stdin of %s failed", self._server, exc_info=True)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send one request and wait for its response's ``result``.

        Raises ServerUnavailableError when the channel is closed, the
        server stops answering, or the wait exceeds ``timeout``, and
        ToolServerError when the server replies with an error.
        """
        async with self._lock:
            if self._closed:
                raise ServerUnavailableError(self._server, "channel closed")

            self._req_id += 1
            request_id = self._req_id
            data = json.dumps(
                {"id": request_id, "method": method, "params": params or {}}
            ).encode("utf-8") + b"\n"
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                self._closed = True
                raise ServerUnavailableError(self._server, f"write failed: {exc}") from exc

            loop = asyncio.get_running_loop()
            deadline = loop.time() + (timeout or self._request_timeout)
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ServerUnavailableError(
                        self._server, f"no response to {method} in time"
                    )
                try:
                    line = await asyncio.wait_for(self._reader.readline(), remaining)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Tool server %s did not answer %s (id=%s) within %.1fs",
                        self._server, method, request_id, timeout or self._request_timeout,
                    )
                    raise ServerUnavailableError(
                        self._server, f"no response to {method} in time"
                    ) from None
                except ValueError as exc:
                    # Line longer than the stream limit; the stream is unusable.
                    self._closed = True
                    raise ServerUnavailableError(
                        self._server, f"oversized response: {exc}"
                    ) from exc

                if not line:
                    self._closed = True
                    raise ServerUnavailableError(self._server, "server closed its output")
                if self._closed:
                    raise ServerUnavailableError(self._server, "channel closed")

                try:
                    response = json.loads(line.decode("utf-8"))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning(
                        "Ignoring non-JSON line from tool server %s: %r",
                        self._server, line[:200],
                    )
                    continue
                if not isinstance(response, dict):
                    logger.warning(
                        "Ignoring non-object response from tool server %s: %r",
                        self._server, response,
                    )
                    continue
                response_id = response.get("id")
                if response_id != request_id:
                    logger.warning(
                        "Discarding stale tool server response "
                        "(server=%s expected id=%s, got id=%s, method=%s)",
                        self._server, request_id, response_id, method,
                    )
                    continue
                break

        if response.get("error") is not None:
            error = response["error"]
            if isinstance(error, dict):
                error = error.get("message") or json.dumps(error)
            raise ToolServerError(self._server, method, str(error))
        return response.get("result")

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from swapbot.common import EndpointTransportError, guarded_call, log_event

LogHandler = Callable[[dict[str, Any]], Awaitable[None]]


class WebSocketLogStream:
    """JSON-RPC ``eth_subscribe("logs")`` over a single aiohttp websocket.

    Requests and notifications share the socket: responses are matched to
    pending futures by id, subscription notifications are dispatched to the
    handler registered for their subscription id.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        name: str,
        ws_url: str,
        timeout_seconds: float = 10.0,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self.name = name
        self._logger = logger
        self._ws_url = ws_url
        self._timeout_seconds = max(0.5, float(timeout_seconds))
        self._heartbeat_seconds = max(1.0, float(heartbeat_seconds))
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._handlers: dict[str, LogHandler] = {}
        self._next_request_id = 0
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None:
                timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout_seconds)
                self._session = aiohttp.ClientSession(timeout=timeout)
            try:
                self._ws = await self._session.ws_connect(self._ws_url, heartbeat=self._heartbeat_seconds)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
                raise EndpointTransportError(f"websocket connect failed: {error}", endpoint=self.name) from error

            self._reader_task = asyncio.create_task(self._read_loop(self._ws), name=f"log-stream-{self.name}")
            log_event(
                self._logger,
                level="info",
                event="log_stream_connected",
                message="Log stream connected",
                endpoint=self.name,
                ws_url=self._ws_url,
            )

    async def _request(self, method: str, params: list[Any]) -> Any:
        await self.connect()
        ws = self._ws
        if ws is None:
            raise EndpointTransportError("websocket is not connected", endpoint=self.name)

        self._next_request_id += 1
        request_id = self._next_request_id
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            response = await asyncio.wait_for(future, timeout=self._timeout_seconds)
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as error:
            raise EndpointTransportError(f"{method} failed: {error}", endpoint=self.name) from error
        finally:
            self._pending.pop(request_id, None)

        error_payload = response.get("error")
        if error_payload:
            message = error_payload.get("message") if isinstance(error_payload, dict) else str(error_payload)
            raise EndpointTransportError(f"{method} rejected: {message}", endpoint=self.name)
        return response.get("result")

    async def subscribe_logs(self, *, address: str, topics: list[str], handler: LogHandler) -> str:
        result = await self._request("eth_subscribe", ["logs", {"address": address, "topics": topics}])
        subscription_id = str(result)
        self._handlers[subscription_id] = handler
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        if self._handlers.pop(subscription_id, None) is None:
            return
        if not self.connected:
            return
        await self._request("eth_unsubscribe", [subscription_id])

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("websocket closed"))
            if self._handlers:
                log_event(
                    self._logger,
                    level="warning",
                    event="log_stream_closed",
                    message="Log stream closed with live subscriptions",
                    endpoint=self.name,
                    subscriptions=len(self._handlers),
                )

    def _dispatch(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            log_event(
                self._logger,
                level="warning",
                event="log_stream_bad_frame",
                message="Discarding malformed websocket frame",
                endpoint=self.name,
                frame_preview=raw[:200],
            )
            return

        if payload.get("method") == "eth_subscription":
            params = payload.get("params") or {}
            handler = self._handlers.get(str(params.get("subscription")))
            if handler is None:
                return
            task = asyncio.create_task(self._run_handler(handler, params.get("result") or {}))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
            return

        future = self._pending.get(payload.get("id"))
        if future is not None and not future.done():
            future.set_result(payload)

    async def _run_handler(self, handler: LogHandler, log: dict[str, Any]) -> None:
        await guarded_call(
            lambda: handler(log),
            logger=self._logger,
            event="log_handler_failed",
            message="Log notification handler raised",
            endpoint=self.name,
        )

    async def close(self) -> None:
        self._handlers.clear()
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        for task in list(self._handler_tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

"""
chains/subscriptions.py - Websocket log subscription.

Opens eth_subscribe("logs") for a set of contracts/topics and pushes every
raw log dict into an asyncio.Queue. Reconnects after a fixed delay when the
connection drops; the consumer side never sees transport errors.
"""

import asyncio
import json
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from core.exceptions import ErrorCode, InfraError
from core.logging import get_logger

logger = get_logger("liqbot.subscriptions")


class LogSubscription:
    """Producer side of the push feed."""

    def __init__(
        self,
        ws_url: str,
        addresses: list[str],
        topics: list,
        queue: asyncio.Queue,
        reconnect_delay_seconds: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.ws_url = ws_url
        self.addresses = addresses
        self.topics = topics
        self.queue = queue
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self._connect = connect
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.subscription_id: Optional[str] = None
        self.reconnects = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name="log-subscription")

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.subscription_id = None

    async def _subscribe(self, ws) -> str:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.addresses, "topics": self.topics}],
        }
        await ws.send(json.dumps(request))
        reply = json.loads(await ws.recv())
        if reply.get("error") or not reply.get("result"):
            raise InfraError(
                "eth_subscribe rejected",
                code=ErrorCode.INFRA_SUBSCRIPTION,
                details={"error": reply.get("error")},
            )
        return reply["result"]

    async def _run(self) -> None:
        while not self._stopping:
            try:
                async with self._connect(self.ws_url) as ws:
                    self.subscription_id = await self._subscribe(ws)
                    logger.info(
                        "Log subscription active",
                        extra={"context": {
                            "subscription_id": self.subscription_id,
                            "contracts": len(self.addresses),
                        }},
                    )
                    async for message in ws:
                        self._dispatch(message)
            except asyncio.CancelledError:
                raise
            except (WebSocketException, OSError, InfraError, ValueError) as e:
                logger.warning(
                    f"Log subscription dropped: {e}",
                    extra={"context": {"retry_in_s": self.reconnect_delay_seconds}},
                )

            self.subscription_id = None
            if self._stopping:
                break
            self.reconnects += 1
            await asyncio.sleep(self.reconnect_delay_seconds)

    def _dispatch(self, message: Any) -> None:
        try:
            payload = json.loads(message)
        except ValueError:
            logger.debug("Ignoring non-JSON websocket frame")
            return

        if payload.get("method") != "eth_subscription":
            return
        log = payload.get("params", {}).get("result")
        if isinstance(log, dict):
            self.queue.put_nowait(log)

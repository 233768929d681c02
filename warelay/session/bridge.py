"""
桥接会话客户端 - 通过 WebSocket 与协议桥接服务通信的 SessionClient 实现。

架构：
  Python (warelay) <-> WebSocket <-> 协议桥接进程 <-> WhatsApp Web

桥接进程负责协议的帧与加密；Python 端负责凭据持久化、状态机与消息转发。
所有帧都是 JSON，二进制字段使用与凭据存储相同的 Buffer 编码（见 store/codec.py）。

消息协议（Python → Bridge）：
- auth：认证令牌
- session.start：携带 creds 启动协议会话
- keys.result：回复 keys.get 请求
- send / read / presence / download：出站操作（带 requestId 的需要回复）
- creds.init：请求生成一套全新凭据

消息协议（Bridge → Python）：
- qr：配对二维码
- open / close：连接建立 / 关闭（close 带 statusCode、reason）
- creds.update：凭据增量
- keys.get / keys.set：协议密钥读写
- messages.upsert：消息批次
- sent / media / creds / error：对带 requestId 请求的回复

二开提示：
- WebSocket 本身断开（而非协议层关闭）按 428 connection closed 上报，由监督者退避重连
"""

import asyncio
import uuid
from typing import Any

from loguru import logger

from warelay.config.schema import BridgeConfig
from warelay.errors import DeliveryFailure, TransientNetworkError
from warelay.session.client import SessionCallbacks, SessionClient
from warelay.session.state import DisconnectReason
from warelay.store import codec
from warelay.store.auth_state import AuthState, CredsFactory

# 带 requestId 的回复类型
_REPLY_TYPES = {"sent", "media", "ack", "error"}


class BridgeSessionClient(SessionClient):
    """
    基于 WebSocket 桥接的会话客户端。

    每个实例对应一次连接尝试；close() 之后不可复用。
    """

    def __init__(
        self,
        auth: AuthState,
        callbacks: SessionCallbacks,
        config: BridgeConfig,
        request_timeout: float = 60.0,
    ):
        super().__init__(auth, callbacks)
        self.config = config
        self.request_timeout = request_timeout
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._pending: dict[str, asyncio.Future] = {}
        self._user: dict[str, Any] | None = None
        self._closing = False

    @property
    def user(self) -> dict[str, Any] | None:
        return self._user

    async def connect(self) -> None:
        """
        连接桥接服务并启动协议会话。

        流程：
        1. 建立 WebSocket 连接
        2. 发送认证令牌（如果配置了）
        3. 发送 session.start（携带当前凭据）
        4. 启动读取循环
        """
        import websockets

        logger.info(f"Connecting to WhatsApp bridge at {self.config.url}...")
        try:
            ws = await websockets.connect(self.config.url, max_size=None)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransientNetworkError(f"bridge unreachable: {e}") from e

        # close() 可能在握手期间被调用：此时不能再启动协议会话
        if self._closing:
            logger.debug("Session closed during bridge handshake - dropping connection")
            await ws.close()
            return
        self._ws = ws

        if self.config.token:
            await self._send({"type": "auth", "token": self.config.token})
        await self._send({"type": "session.start", "creds": self.auth.creds})
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Bridge close error: {e}")

        # 关闭可能由读取循环自身触发（on_close → 监督者销毁会话），此时不能取消自己
        current = asyncio.current_task()
        if self._reader and self._reader is not current and not self._reader.done():
            self._reader.cancel()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._fail_pending("session closed")

    # ------------------------------------------------------------------
    # 出站操作
    # ------------------------------------------------------------------

    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]:
        reply = await self._request({"type": "send", "to": jid, "content": content})
        return reply.get("result") or {}

    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        await self._send({"type": "read", "keys": keys})

    async def send_presence(self, presence: str) -> None:
        await self._send({"type": "presence", "presence": presence})

    async def download_media(self, message: dict[str, Any]) -> bytes:
        reply = await self._request({"type": "download", "message": message})
        data = reply.get("data")
        if not isinstance(data, bytes):
            raise DeliveryFailure("bridge returned no media data")
        return data

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise DeliveryFailure("WhatsApp bridge not connected")
        await self._ws.send(codec.dumps(payload))

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """发送带 requestId 的请求并等待对应回复。"""
        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({**payload, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(f"bridge request {payload['type']} timed out") from e
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DeliveryFailure(reason))
        self._pending.clear()

    # ------------------------------------------------------------------
    # 入站处理
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """持续读取桥接服务的帧；连接意外断开时按 428 上报。"""
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    await self._handle_bridge_message(raw)
                except Exception as e:
                    logger.error(f"Error handling bridge message: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"WhatsApp bridge connection error: {e}")

        self._fail_pending("bridge connection lost")
        if not self._closing and self.callbacks:
            await self.callbacks.on_close(DisconnectReason.CONNECTION_CLOSED, "Bridge connection lost")

    def _spawn(self, coro) -> None:
        """在后台执行，不阻塞读取循环。"""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_bridge_message(self, raw: str | bytes) -> None:
        """
        按 type 字段分发桥接服务的帧。

        参数:
            raw: 原始 JSON 帧
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = codec.loads(raw)
        msg_type = data.get("type")

        request_id = data.get("requestId")
        if msg_type in _REPLY_TYPES and request_id:
            future = self._pending.get(request_id)
            if future and not future.done():
                if msg_type == "error":
                    future.set_exception(DeliveryFailure(data.get("error") or "bridge error"))
                else:
                    future.set_result(data)
            return

        callbacks = self.callbacks
        if callbacks is None:
            return

        if msg_type == "qr":
            await callbacks.on_pairing(data.get("qr", ""))

        elif msg_type == "open":
            self._user = data.get("user")
            await callbacks.on_open(self._user)

        elif msg_type == "close":
            self._user = None
            await callbacks.on_close(data.get("statusCode"), data.get("reason"))

        elif msg_type == "creds.update":
            await callbacks.on_creds_update(data.get("update") or {})

        elif msg_type == "keys.get":
            self._spawn(self._answer_keys_get(request_id, data.get("category", ""), data.get("ids") or []))

        elif msg_type == "keys.set":
            self._spawn(self.auth.keys.set(data.get("data") or {}))

        elif msg_type == "messages.upsert":
            self._spawn(callbacks.on_messages(data.get("upsert") or {}))

        elif msg_type == "error":
            logger.error(f"WhatsApp bridge error: {data.get('error')}")

        else:
            logger.debug(f"Unhandled bridge message type: {msg_type}")

    async def _answer_keys_get(self, request_id: str | None, category: str, ids: list[str]) -> None:
        values = await self.auth.keys.get(category, ids)
        await self._send({"type": "keys.result", "requestId": request_id, "data": values})


def bridge_creds_factory(config: BridgeConfig, timeout: float = 30.0) -> CredsFactory:
    """
    创建"向桥接服务申请全新凭据"的协程工厂。

    凭据中的密钥对由桥接进程按协议生成，Python 端不涉及任何密码学实现。
    """

    async def _factory() -> dict[str, Any]:
        import websockets

        try:
            async with websockets.connect(config.url, max_size=None) as ws:
                if config.token:
                    await ws.send(codec.dumps({"type": "auth", "token": config.token}))
                await ws.send(codec.dumps({"type": "creds.init"}))
                async with asyncio.timeout(timeout):
                    async for raw in ws:
                        data = codec.loads(raw)
                        if data.get("type") == "creds":
                            return data.get("creds") or {}
                        if data.get("type") == "error":
                            raise TransientNetworkError(f"bridge refused creds.init: {data.get('error')}")
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransientNetworkError(f"could not obtain credentials from bridge: {e}") from e
        raise TransientNetworkError("bridge closed before returning credentials")

    return _factory

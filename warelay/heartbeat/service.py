"""
保活服务实现 - 连接期间的在线状态更新与进程自 ping。

本模块提供两个周期任务：
- PresenceService：会话已连接时每隔 interval 秒发送一次 "available"，
  让账号保持"在线"；由生命周期通知驱动启停
- SelfPingService：每隔 interval 秒 GET 一次健康检查地址，
  防止托管平台因空闲而休眠进程

架构设计：
- 基于 asyncio.Task 的定期循环（与原心跳服务相同的结构）
- 单次失败只记录日志，循环继续
"""

import asyncio
from typing import Callable

import httpx
from loguru import logger

from warelay.bus.events import LifecycleEvent
from warelay.session.client import SessionClient

DEFAULT_PRESENCE_INTERVAL_S = 30
DEFAULT_SELF_PING_INTERVAL_S = 240


class PresenceService:
    """
    在线状态保活服务。

    通过 ConnectionSupervisor.subscribe(service.on_lifecycle) 接入：
    connected 时启动，disconnected / pairingRequired 时停止。
    """

    def __init__(
        self,
        session_provider: Callable[[], SessionClient | None],
        interval_s: float = DEFAULT_PRESENCE_INTERVAL_S,
        enabled: bool = True,
    ):
        """
        参数:
            session_provider: 返回当前会话句柄的函数（会话随重连而更换）
            interval_s: 更新间隔（秒）
            enabled: 是否启用
        """
        self.session_provider = session_provider
        self.interval_s = interval_s
        self.enabled = enabled
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def on_lifecycle(self, event: LifecycleEvent) -> None:
        """生命周期通知处理。"""
        if event.kind == "connected":
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        if not self.enabled or self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Online presence enabled - updating every {self.interval_s}s")

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Presence updates stopped")

    async def _run_loop(self) -> None:
        """先立即发送一次，然后按间隔循环。"""
        while True:
            try:
                await self._tick()
                await asyncio.sleep(self.interval_s)
            except asyncio.CancelledError:
                break

    async def _tick(self) -> None:
        session = self.session_provider()
        if session is None:
            return
        try:
            await session.send_presence("available")
            logger.debug('Status updated to "available" (online)')
        except Exception as e:
            logger.warning(f"Presence update failed: {e}")


class SelfPingService:
    """自 ping 服务。"""

    def __init__(
        self,
        url: str,
        interval_s: float = DEFAULT_SELF_PING_INTERVAL_S,
        enabled: bool = False,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.interval_s = interval_s
        self.enabled = enabled
        self.timeout = timeout
        self._client = client
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """启动自 ping。未启用或未配置地址时直接返回。"""
        if not self.enabled or not self.url:
            logger.info("Self-ping disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Self-ping enabled: {self.url} every {self.interval_s}s")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Self-ping stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_s)
                if self._running:
                    await self.ping()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Self-ping error: {e}")

    async def ping(self) -> bool:
        """
        请求一次健康检查地址。

        返回:
            是否得到 2xx 响应
        """
        try:
            if self._client is not None:
                response = await self._client.get(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.url)
        except httpx.HTTPError as e:
            logger.warning(f"Ping failed: {e}")
            return False

        if response.is_success:
            logger.debug(f"Ping successful - status {response.status_code}")
            return True
        logger.warning(f"Ping failed: HTTP {response.status_code}")
        return False

"""
连接监督者 - 唯一拥有会话句柄与连接状态的组件。

职责：
1. 按状态机（state.transition）驱动连接、重连、配对与终止
2. 每次连接尝试前加载认证状态，并把 creds.update 持久化
3. 用"代数"（generation）标记每个会话：来自已被取代会话的事件一律丢弃
4. 同一时刻最多一个重试定时器；调度新的或开始连接都会取消旧的
5. 向订阅者发出 connected / disconnected / pairingRequired 通知，并写连接日志

所有可变状态都是实例字段，没有模块级全局变量。

【Java 开发者类比】
- 类似于一个持有 ScheduledFuture 的状态机服务（Spring StateMachine + TaskScheduler）
- subscribe() 相当于 addListener()
"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from warelay.bus.events import ConnectionEvent, LifecycleEvent
from warelay.errors import DeliveryFailure, FatalSessionError
from warelay.session.client import SessionCallbacks, SessionClient, SessionFactory
from warelay.session.state import (
    CancelRetry,
    ClearAuth,
    Closed,
    Connect,
    ConnectionState,
    Effect,
    Emit,
    EnterFatal,
    Event,
    Opened,
    PairingChallenge,
    ReconnectPolicy,
    Reset,
    ScheduleRetry,
    Start,
    StartupFailed,
    Teardown,
    transition,
)
from warelay.store.auth_state import AuthState, CredsFactory, load_auth_state
from warelay.store.credentials import CredentialStore
from warelay.store.records import ConnectionLogWriter
from warelay.utils.helpers import timestamp

LifecycleListener = Callable[[LifecycleEvent], Awaitable[None]]
MessagesHandler = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionSupervisor:
    """
    会话连接监督者。

    属性:
        state: 当前连接状态
        attempts: 当前重试计数（连接成功或收到配对挑战时清零）
        generation: 会话代数，每次连接尝试 +1
    """

    def __init__(
        self,
        store: CredentialStore,
        session_factory: SessionFactory,
        creds_factory: CredsFactory,
        policy: ReconnectPolicy | None = None,
        connection_log: ConnectionLogWriter | None = None,
        on_messages: MessagesHandler | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        参数:
            store: 凭据存储
            session_factory: 会话工厂
            creds_factory: 生成全新凭据的协程工厂
            policy: 重连策略
            connection_log: 连接日志写入器（可选）
            on_messages: 入站消息批次处理回调（通常是 MessageRelay.handle_upsert）
            sleep: 重试定时器使用的等待函数
        """
        self.store = store
        self.session_factory = session_factory
        self.creds_factory = creds_factory
        self.policy = policy or ReconnectPolicy()
        self.connection_log = connection_log
        self.on_messages = on_messages
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.generation = 0

        self._session: SessionClient | None = None
        self._auth: AuthState | None = None
        self._retry_task: asyncio.Task | None = None
        self._listeners: list[LifecycleListener] = []

        self._connected_user: dict[str, Any] | None = None
        self._last_challenge: str | None = None
        self._last_challenge_at: str | None = None
        self._last_connected_at: str | None = None
        self._fatal_reason: str | None = None
        self._clear_ok = True

    # ------------------------------------------------------------------
    # 对外操作
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """开始连接。已在连接中时忽略；FATAL 状态下只记录日志。"""
        if self.state == ConnectionState.FATAL:
            logger.warning(f"Start ignored: session is FATAL ({self._fatal_reason}). Clear the session first")
            return
        await self._dispatch(Start())

    async def stop(self) -> None:
        """优雅停止：取消重试定时器并销毁当前会话。"""
        self._cancel_retry()
        await self._teardown()
        if self.state != ConnectionState.FATAL:
            self.state = ConnectionState.DISCONNECTED
        self._connected_user = None
        logger.info("Connection supervisor stopped")

    async def reset(self) -> bool:
        """
        外部显式重置：取消重试、销毁会话、清除 FATAL 与计数，并删除全部持久化凭据。

        返回:
            凭据是否删除成功
        """
        logger.warning("Resetting session...")
        self._fatal_reason = None
        self._clear_ok = True
        await self._dispatch(Reset())
        return self._clear_ok

    clear_session = reset

    def status(self) -> dict[str, Any]:
        """当前连接状态快照。"""
        return {
            "state": self.state.value,
            "connected": self.state == ConnectionState.CONNECTED,
            "attempts": self.attempts,
            "generation": self.generation,
            "user": self._connected_user,
            "pairing_challenge": self._last_challenge,
            "pairing_challenge_at": self._last_challenge_at,
            "last_connected_at": self._last_connected_at,
            "fatal_reason": self._fatal_reason,
            "retry_pending": self._retry_task is not None and not self._retry_task.done(),
        }

    def subscribe(self, listener: LifecycleListener) -> None:
        """注册生命周期通知监听器。"""
        self._listeners.append(listener)

    def require_session(self) -> SessionClient:
        """
        获取已连接的会话句柄（供出站发送使用）。

        异常:
            FatalSessionError: 会话处于 FATAL 状态
            DeliveryFailure: 当前未连接
        """
        if self.state == ConnectionState.FATAL:
            raise FatalSessionError(self._fatal_reason or "session is fatal")
        if self.state != ConnectionState.CONNECTED or self._session is None:
            raise DeliveryFailure("WhatsApp not connected")
        return self._session

    @property
    def session(self) -> SessionClient | None:
        return self._session

    # ------------------------------------------------------------------
    # 状态机驱动
    # ------------------------------------------------------------------

    async def _dispatch(self, event: Event, generation: int | None = None) -> None:
        """
        应用一个事件。

        参数:
            event: 状态机事件
            generation: 事件来源会话的代数；为 None 表示外部事件（不做代数检查）
        """
        if generation is not None and generation != self.generation:
            logger.debug(f"Dropping {type(event).__name__} from stale session generation {generation}")
            return

        result = transition(self.state, self.attempts, event, self.policy)
        if result.state != self.state:
            logger.debug(f"Connection state: {self.state.value} -> {result.state.value}")
        self.state = result.state
        self.attempts = result.attempts

        for effect in result.effects:
            await self._apply(effect)

    async def _apply(self, effect: Effect) -> None:
        if isinstance(effect, CancelRetry):
            self._cancel_retry()
        elif isinstance(effect, Teardown):
            await self._teardown()
        elif isinstance(effect, Connect):
            await self._connect()
        elif isinstance(effect, ScheduleRetry):
            self._schedule_retry(effect.delay, effect.label)
        elif isinstance(effect, Emit):
            await self._emit(effect)
        elif isinstance(effect, EnterFatal):
            self._cancel_retry()
            self._fatal_reason = effect.reason
            logger.error(f"Session FATAL: {effect.reason}")
            logger.error("Manual intervention required: run `warelay clear-session` then restart")
        elif isinstance(effect, ClearAuth):
            self._connected_user = None
            self._last_challenge = None
            self._clear_ok = await self.store.clear()

    # ------------------------------------------------------------------
    # 副作用实现
    # ------------------------------------------------------------------

    def _cancel_retry(self) -> None:
        if self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    def _schedule_retry(self, delay: float, label: str) -> None:
        self._cancel_retry()
        logger.info(f"{label} - reconnecting in {delay:.1f}s (attempt {self.attempts})")
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._retry_task = None
        try:
            await self._dispatch(Start())
        except Exception as e:
            logger.error(f"Reconnect error: {e}")

    async def _teardown(self) -> None:
        """销毁当前会话：先解除回调，再关闭传输。"""
        session, self._session = self._session, None
        self._auth = None
        if session is None:
            return
        session.detach()
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing session: {e}")

    async def _connect(self) -> None:
        """开始新一代会话的连接尝试。"""
        self.generation += 1
        generation = self.generation
        logger.info(f"Starting WhatsApp session (generation {generation}, attempt {self.attempts})")

        try:
            auth = await load_auth_state(self.store, self.creds_factory)
            if generation != self.generation or self.state != ConnectionState.CONNECTING:
                return
            session = self.session_factory(auth, self._callbacks(generation))
            self._auth = auth
            self._session = session
            await session.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Startup error: {e}")
            await self._dispatch(StartupFailed(e), generation)

    def _callbacks(self, generation: int) -> SessionCallbacks:
        """创建绑定到指定代数的回调集合。"""

        async def on_pairing(challenge: str) -> None:
            if generation == self.generation:
                self._last_challenge = challenge
                self._last_challenge_at = timestamp()
            await self._dispatch(PairingChallenge(challenge), generation)

        async def on_open(user: dict[str, Any] | None) -> None:
            if generation == self.generation:
                self._connected_user = user
                self._last_challenge = None
                self._last_connected_at = timestamp()
            await self._dispatch(Opened(user), generation)

        async def on_close(status_code: int | None, reason: str | None) -> None:
            if generation == self.generation:
                self._connected_user = None
            logger.warning(f"Connection closed (status {status_code}): {reason}")
            await self._dispatch(Closed(status_code, reason), generation)

        async def on_creds_update(update: dict[str, Any]) -> None:
            if generation != self.generation or self._auth is None:
                return
            self._auth.update_creds(update)
            await self._auth.save_creds()

        async def on_messages(upsert: dict[str, Any]) -> None:
            if generation != self.generation or self.on_messages is None:
                return
            try:
                await self.on_messages(upsert)
            except Exception as e:
                logger.error(f"Message processing error: {e}")

        return SessionCallbacks(
            on_pairing=on_pairing,
            on_open=on_open,
            on_close=on_close,
            on_creds_update=on_creds_update,
            on_messages=on_messages,
        )

    async def _emit(self, effect: Emit) -> None:
        """通知订阅者并写连接日志；单个监听器出错不影响其他监听器。"""
        event = LifecycleEvent(
            kind=effect.kind,
            generation=self.generation,
            attempt=self.attempts,
            status_code=effect.status_code,
            reason=effect.reason,
            challenge=effect.challenge,
            user=effect.user,
        )
        if effect.kind == "connected":
            user = effect.user or {}
            logger.info(f"WhatsApp connected - account: {user.get('id', 'Unknown')}")
        elif effect.kind == "pairingRequired":
            logger.info("Pairing required - scan the QR code to link the account")

        if self.connection_log is not None:
            await self.connection_log.record(ConnectionEvent.from_lifecycle(event))

        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Lifecycle listener error: {e}")

"""
连接状态机 - 纯函数形式的状态转换表。

transition(state, attempts, event, policy) 只做计算，不做任何 I/O：
输入当前状态、重试计数和事件，输出新状态、新计数和一组"副作用描述"（effects），
由 ConnectionSupervisor 依次执行。这样整张转换表可以脱离网络单独测试。

状态：
  DISCONNECTED ──Start──▶ CONNECTING ──PairingChallenge──▶ AWAITING_PAIRING
                              │                                  │
                              └────────────Opened────────────────┴──▶ CONNECTED
  任意非终态 ──Closed──▶ DISCONNECTED（按断线分类决定是否重试）或 FATAL
  FATAL 为终态，只有 Reset 能离开

断线分类（按状态码）：
- 401 logged out / 500 bad session → 会话失效类，最多重试 max_session_retries 次
- 428 connection closed / 408 lost 或 timed out → 网络类，无限退避重试
- 515 restart required → 配对完成后的协议重启：计数清零，固定短延迟后新建会话
- 无状态码或其他任何状态码 → 未知类，与网络类同样处理
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Union

from warelay.config.schema import ReconnectConfig
from warelay.errors import CorruptStateError
from warelay.utils.retry import backoff_delay


class ConnectionState(str, Enum):
    """会话连接状态。"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    FATAL = "fatal"


class DisconnectReason(IntEnum):
    """协议层断线状态码。"""
    LOGGED_OUT = 401
    CONNECTION_LOST = 408  # timed out 使用同一个状态码
    CONNECTION_CLOSED = 428
    BAD_SESSION = 500
    RESTART_REQUIRED = 515


class DisconnectClass(str, Enum):
    """断线分类，决定重试策略。"""
    SESSION_INVALID = "session_invalid"
    NETWORK = "network"
    RESTART = "restart"
    UNKNOWN = "unknown"


def classify_disconnect(status_code: int | None) -> DisconnectClass:
    """按状态码对断线分类。"""
    if status_code in (DisconnectReason.LOGGED_OUT, DisconnectReason.BAD_SESSION):
        return DisconnectClass.SESSION_INVALID
    if status_code in (DisconnectReason.CONNECTION_CLOSED, DisconnectReason.CONNECTION_LOST):
        return DisconnectClass.NETWORK
    if status_code == DisconnectReason.RESTART_REQUIRED:
        return DisconnectClass.RESTART
    return DisconnectClass.UNKNOWN


_INTEGRITY_MARKERS = ("decrypt", "invalid", "corrupt", "malformed")


def is_integrity_error(error: BaseException) -> bool:
    """启动错误是否属于数据完整性问题（解密失败、数据损坏等）。"""
    if isinstance(error, CorruptStateError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _INTEGRITY_MARKERS)


@dataclass
class ReconnectPolicy:
    """
    重连策略参数。

    属性:
        base_delay / max_delay / jitter: 退避公式参数（秒）
        restart_delay: 515 重启时的固定延迟（秒）
        max_session_retries: 401/500 的最大重试次数
        max_startup_retries: 启动完整性错误的最大重试次数
    """
    base_delay: float = 5.0
    max_delay: float = 30.0
    jitter: float = 1.0
    restart_delay: float = 1.0
    max_session_retries: int = 5
    max_startup_retries: int = 10

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> "ReconnectPolicy":
        return cls(**config.model_dump())

    def backoff(self, attempts: int) -> float:
        return backoff_delay(attempts, self.base_delay, self.max_delay, self.jitter)


# ============================================================================
# 事件
# ============================================================================

@dataclass(frozen=True)
class Start:
    """请求开始一次连接尝试（外部 start() 或重试定时器到期）。"""


@dataclass(frozen=True)
class PairingChallenge:
    challenge: str


@dataclass(frozen=True)
class Opened:
    user: dict[str, Any] | None = None


@dataclass(frozen=True)
class Closed:
    status_code: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class StartupFailed:
    error: BaseException


@dataclass(frozen=True)
class Reset:
    """外部显式重置（清除会话）。"""


Event = Union[Start, PairingChallenge, Opened, Closed, StartupFailed, Reset]


# ============================================================================
# 副作用
# ============================================================================

@dataclass(frozen=True)
class Emit:
    """向订阅者发出生命周期通知。"""
    kind: str
    status_code: int | None = None
    reason: str | None = None
    challenge: str | None = None
    user: dict[str, Any] | None = None


@dataclass(frozen=True)
class ScheduleRetry:
    delay: float
    label: str


@dataclass(frozen=True)
class CancelRetry:
    pass


@dataclass(frozen=True)
class Teardown:
    """销毁当前会话（解除回调、关闭传输）。"""


@dataclass(frozen=True)
class Connect:
    """开始一次新的连接尝试（代数 +1）。"""


@dataclass(frozen=True)
class EnterFatal:
    reason: str


@dataclass(frozen=True)
class ClearAuth:
    """删除本会话的全部持久化凭据。"""


Effect = Union[Emit, ScheduleRetry, CancelRetry, Teardown, Connect, EnterFatal, ClearAuth]


@dataclass
class Transition:
    state: ConnectionState
    attempts: int
    effects: list[Effect] = field(default_factory=list)


def _retry(attempts: int, policy: ReconnectPolicy, label: str) -> ScheduleRetry:
    return ScheduleRetry(policy.backoff(attempts), label)


def transition(
    state: ConnectionState,
    attempts: int,
    event: Event,
    policy: ReconnectPolicy,
) -> Transition:
    """
    计算状态转换。

    参数:
        state: 当前状态
        attempts: 当前重试计数
        event: 输入事件
        policy: 重连策略

    返回:
        Transition；不适用于当前状态的事件返回原状态且 effects 为空
    """
    unchanged = Transition(state, attempts)

    if isinstance(event, Reset):
        return Transition(ConnectionState.DISCONNECTED, 0, [CancelRetry(), Teardown(), ClearAuth()])

    if state == ConnectionState.FATAL:
        return unchanged

    if isinstance(event, Start):
        if state != ConnectionState.DISCONNECTED:
            return unchanged
        return Transition(ConnectionState.CONNECTING, attempts, [CancelRetry(), Teardown(), Connect()])

    if isinstance(event, PairingChallenge):
        if state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
            return unchanged
        return Transition(
            ConnectionState.AWAITING_PAIRING, 0,
            [Emit("pairingRequired", challenge=event.challenge)],
        )

    if isinstance(event, Opened):
        if state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
            return unchanged
        return Transition(ConnectionState.CONNECTED, 0, [Emit("connected", user=event.user)])

    if isinstance(event, Closed):
        if state == ConnectionState.DISCONNECTED:
            return unchanged
        emit = Emit("disconnected", status_code=event.status_code, reason=event.reason)
        kind = classify_disconnect(event.status_code)

        if kind == DisconnectClass.RESTART:
            return Transition(
                ConnectionState.DISCONNECTED, 0,
                [emit, Teardown(), ScheduleRetry(policy.restart_delay, "Pairing completed, restarting session")],
            )

        attempts += 1
        if kind == DisconnectClass.SESSION_INVALID:
            if attempts > policy.max_session_retries:
                return Transition(
                    ConnectionState.FATAL, attempts,
                    [emit, Teardown(), EnterFatal(
                        f"Session rejected with status {event.status_code} after "
                        f"{policy.max_session_retries} retries"
                    )],
                )
            label = f"Session rejected ({attempts}/{policy.max_session_retries}), retrying with existing credentials"
        elif kind == DisconnectClass.NETWORK:
            label = "Connection lost"
        else:
            label = f"Unknown disconnect code {event.status_code}"
        return Transition(ConnectionState.DISCONNECTED, attempts, [emit, Teardown(), _retry(attempts, policy, label)])

    if isinstance(event, StartupFailed):
        if state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_PAIRING):
            return unchanged
        attempts += 1
        if is_integrity_error(event.error):
            if attempts > policy.max_startup_retries:
                return Transition(
                    ConnectionState.FATAL, attempts,
                    [Teardown(), EnterFatal(f"Startup integrity error persists: {event.error}")],
                )
            label = f"Integrity error at startup ({attempts}/{policy.max_startup_retries})"
        else:
            label = "Startup error"
        return Transition(ConnectionState.DISCONNECTED, attempts, [Teardown(), _retry(attempts, policy, label)])

    return unchanged

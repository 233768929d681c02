"""
会话客户端抽象 - 长连接消息会话的统一接口。

ConnectionSupervisor 只依赖本模块定义的接口，不关心底层协议如何实现：
- SessionCallbacks：会话向监督者上报事件的回调集合
- SessionClient：一次连接尝试对应的会话句柄（连接、断开、收发）
- SessionFactory：根据认证状态和回调创建会话的工厂

每次连接尝试都会创建一个新的 SessionClient；旧会话在下一次尝试之前
必须 detach()（解除回调）并 close()（关闭传输）。

【Java 开发者类比】
- SessionClient 相当于 Java 的 abstract class，具体实现见 bridge.py
- SessionCallbacks 相当于一个 Listener 接口的实现对象
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from warelay.store.auth_state import AuthState


@dataclass
class SessionCallbacks:
    """
    会话事件回调。

    属性:
        on_pairing: 收到配对挑战（二维码载荷）
        on_open: 连接建立，参数为账号信息
        on_close: 连接关闭，参数为 (状态码, 原因)
        on_creds_update: 凭据增量更新
        on_messages: 收到消息批次（{"type": "notify"|"append", "messages": [...]}）
    """
    on_pairing: Callable[[str], Awaitable[None]]
    on_open: Callable[[dict[str, Any] | None], Awaitable[None]]
    on_close: Callable[[int | None, str | None], Awaitable[None]]
    on_creds_update: Callable[[dict[str, Any]], Awaitable[None]]
    on_messages: Callable[[dict[str, Any]], Awaitable[None]]


class SessionClient(ABC):
    """
    会话句柄抽象基类。

    子类负责与底层协议通信，并通过 callbacks 上报事件。
    detach() 之后不得再调用任何回调。
    """

    def __init__(self, auth: AuthState, callbacks: SessionCallbacks):
        self.auth = auth
        self.callbacks: SessionCallbacks | None = callbacks

    @property
    def user(self) -> dict[str, Any] | None:
        """已连接账号信息（id、name），未连接时为 None。"""
        return None

    @abstractmethod
    async def connect(self) -> None:
        """
        建立连接。

        这里抛出的异常视为"启动错误"，由监督者分类后决定是否重试。
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """关闭底层传输，可重复调用。"""
        pass

    def detach(self) -> None:
        """解除全部事件回调。"""
        self.callbacks = None

    @abstractmethod
    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]:
        """
        发送一条消息。

        参数:
            jid: 目标 JID
            content: 消息内容（{"text": ...} / {"image": bytes, "caption": ...} 等）

        返回:
            已发送消息的信息（至少包含 key.id）
        """
        pass

    @abstractmethod
    async def read_messages(self, keys: list[dict[str, Any]]) -> None:
        """发送已读回执。"""
        pass

    @abstractmethod
    async def send_presence(self, presence: str) -> None:
        """更新在线状态（如 "available"）。"""
        pass

    @abstractmethod
    async def download_media(self, message: dict[str, Any]) -> bytes:
        """下载消息中的媒体内容。"""
        pass


SessionFactory = Callable[[AuthState, SessionCallbacks], SessionClient]

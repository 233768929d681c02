"""
事件与记录类型定义模块 - 在各组件之间流转的数据结构。

本模块定义：
- LifecycleEvent：会话生命周期通知（connected / disconnected / pairingRequired）
- ConnectionEvent：写入 connection_logs 的一行
- MessageRecord：写入 messages 的一行，同时可转换为 Webhook 载荷
- SendRequest：出站发送请求（带契约校验）

【Java 开发者类比】
- 使用 Python 的 @dataclass 装饰器，等价于 Java 的 record 类或 Lombok 的 @Data
- to_row() / to_webhook_payload() 类似于 DTO → Entity 的转换方法
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from warelay.utils.helpers import timestamp

LifecycleKind = Literal["connected", "disconnected", "pairingRequired"]


@dataclass
class LifecycleEvent:
    """
    会话生命周期通知，由 ConnectionSupervisor 发出，
    在线状态保活、连接日志等协作者订阅消费。

    属性:
        kind: 事件类型
        generation: 产生该事件的会话代数
        attempt: 事件发生时的重连尝试计数
        status_code: 断线状态码（仅 disconnected）
        reason: 断线原因（仅 disconnected）
        challenge: 配对挑战载荷（仅 pairingRequired，通常用于渲染二维码）
        user: 已连接账号信息（仅 connected）
    """
    kind: LifecycleKind
    generation: int
    attempt: int = 0
    status_code: int | None = None
    reason: str | None = None
    challenge: str | None = None
    user: dict[str, Any] | None = None
    timestamp: str = field(default_factory=timestamp)


@dataclass
class ConnectionEvent:
    """connection_logs 表的一行。"""
    event_type: str
    status_code: int | None
    reason: str | None
    attempt_number: int
    timestamp: str = field(default_factory=timestamp)

    @classmethod
    def from_lifecycle(cls, event: LifecycleEvent) -> "ConnectionEvent":
        """把生命周期通知转换为日志行。connected 固定记为 200/Success/0。"""
        if event.kind == "connected":
            return cls("connected", 200, "Success", 0, event.timestamp)
        if event.kind == "disconnected":
            return cls("disconnect", event.status_code, event.reason, event.attempt, event.timestamp)
        return cls("pairing_required", None, None, event.attempt, event.timestamp)

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MessageRecord:
    """
    messages 表的一行 - 每条观察到或发出的消息一行。

    direction 为 inbound / outbound；chat_type 为 personal / group。
    媒体字段引用归档服务（Telegram）中的副本，而不是保存二进制本身。
    """
    message_id: str
    jid: str
    from_plain_phone: str | None
    display_name: str
    type: str
    text: str | None = None
    media_unique_id: str | None = None
    telegram_message_id: str | None = None
    telegram_file_id: str | None = None
    media_mimetype: str | None = None
    media_filename: str | None = None
    media_size: int | None = None
    reaction_text: str | None = None
    is_reply: bool = False
    reply_to_message_id: str | None = None
    reply_to_text: str | None = None
    chat_type: str = "personal"
    from_me: bool = False
    received_at: str = field(default_factory=timestamp)
    created_at: str = field(default_factory=timestamp)
    raw: Any = None
    direction: str = "inbound"

    def to_row(self) -> dict[str, Any]:
        """转换为表行。raw 中的二进制字段按 Buffer 格式编码，保证可以 JSON 序列化。"""
        from warelay.store import codec

        row = asdict(self)
        if self.raw is not None:
            row["raw"] = codec.salvage(codec.dumps(self.raw))
        return row

    def to_webhook_payload(self) -> dict[str, Any]:
        """转换为下游 Webhook 的 JSON 载荷（不含 raw）。"""
        return {
            "message_id": self.message_id,
            "jid": self.jid,
            "phone_no": self.from_plain_phone,
            "display_name": self.display_name,
            "type": self.type,
            "text": self.text,
            "media_unique_id": self.media_unique_id,
            "telegram_message_id": self.telegram_message_id,
            "telegram_file_id": self.telegram_file_id,
            "media_mimetype": self.media_mimetype,
            "media_filename": self.media_filename,
            "media_size": self.media_size,
            "from_me": self.from_me,
            "received_at": self.received_at,
            "is_reply": self.is_reply,
            "reply_to_message_id": self.reply_to_message_id,
            "reply_to_text": self.reply_to_text,
            "reaction_text": self.reaction_text,
        }


@dataclass
class SendRequest:
    """
    出站发送请求。

    契约：text 与 file_bytes 至少有一个；file_bytes 必须带 mimetype。
    图片/视频可以同时带 text 作为说明文字。
    """
    target: str
    text: str | None = None
    file_bytes: bytes | None = None
    filename: str | None = None
    mimetype: str | None = None

    def validate(self, max_file_size: int | None = None) -> None:
        """
        校验发送契约。

        异常:
            ValueError: 契约不满足（消息会原样返回给调用方）
        """
        if not self.target:
            raise ValueError("Missing required field: target")
        if not self.text and not self.file_bytes:
            raise ValueError("Either message or file required")
        if self.file_bytes:
            if not self.mimetype:
                raise ValueError("Mimetype required for file upload")
            if max_file_size is not None and len(self.file_bytes) > max_file_size:
                raise ValueError(f"File too large (max {max_file_size // (1024 * 1024)}MB)")

    @property
    def media_category(self) -> str | None:
        """MIME 主类型（image / video / audio / application ...）。"""
        return self.mimetype.split("/")[0] if self.mimetype else None

"""
消息内容提取 - 从协议层消息结构中取出类型、文本、回复与表情回应。

协议层消息形如：
    {
        "key": {"remoteJid": "...", "id": "...", "fromMe": false},
        "pushName": "Alice",
        "messageTimestamp": 1700000000,
        "message": {"extendedTextMessage": {"text": "hi", "contextInfo": {...}}}
    }

message 下的第一个内容键即消息类型（conversation / imageMessage / reactionMessage ...）。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from warelay.utils.helpers import timestamp, to_int

# 不产生记录的协议内部消息类型
IGNORED_TYPES = frozenset({"senderKeyDistributionMessage", "protocolMessage", "messageContextInfo"})

# 需要下载并归档的媒体类型
MEDIA_TYPES = frozenset({"imageMessage", "videoMessage", "audioMessage", "documentMessage", "stickerMessage"})


@dataclass
class ReplyInfo:
    reply_to_message_id: str | None = None
    reply_to_text: str | None = None


@dataclass
class ExtractedContent:
    """提取结果（不含媒体归档字段，媒体由 MessageRelay 处理）。"""
    text: str | None = None
    reaction_text: str | None = None
    is_reply: bool = False
    reply_to_message_id: str | None = None
    reply_to_text: str | None = None


def get_content_type(message: dict[str, Any] | None) -> str | None:
    """返回消息的内容类型键；没有可识别的内容时返回 None。"""
    if not message:
        return None
    for key in message:
        if (key == "conversation" or "Message" in key) and key != "senderKeyDistributionMessage":
            return key
    return None


def extract_reply(content: Any) -> ReplyInfo | None:
    """从 contextInfo 中提取被回复消息的 ID 和文本，非回复时返回 None。"""
    if not isinstance(content, dict):
        return None
    context = content.get("contextInfo") or {}
    stanza_id = context.get("stanzaId")
    quoted = context.get("quotedMessage")
    if not stanza_id and not quoted:
        return None

    reply = ReplyInfo(reply_to_message_id=stanza_id)
    if quoted:
        quoted_type = get_content_type(quoted)
        quoted_content = quoted.get(quoted_type) if quoted_type else None
        if isinstance(quoted_content, str):
            reply.reply_to_text = quoted_content
        elif isinstance(quoted_content, dict):
            reply.reply_to_text = quoted_content.get("text") or quoted_content.get("caption") or str(quoted_content)[:100]
    return reply


def extract_content(message_type: str, content: Any) -> ExtractedContent:
    """按类型提取文本与表情回应，并附带回复信息。"""
    data = ExtractedContent()

    reply = extract_reply(content)
    if reply:
        data.is_reply = True
        data.reply_to_message_id = reply.reply_to_message_id
        data.reply_to_text = reply.reply_to_text

    body = content if isinstance(content, dict) else {}
    if message_type == "conversation":
        data.text = content if isinstance(content, str) else None
    elif message_type == "extendedTextMessage":
        data.text = body.get("text")
    elif message_type in MEDIA_TYPES:
        data.text = body.get("caption") or f"[{message_type.replace('Message', '')}]"
    elif message_type == "reactionMessage":
        emoji = body.get("text") or None
        data.reaction_text = emoji
        data.text = f"Reacted {emoji}" if emoji else "Removed reaction"
    else:
        data.text = f"[{message_type}]"
    return data


def message_timestamp(msg: dict[str, Any]) -> str:
    """消息时间（秒级 epoch，可能是 Long）转为 ISO 8601；缺失或无法解析时使用当前时间。"""
    seconds = to_int(msg.get("messageTimestamp"))
    if seconds <= 0:
        return timestamp()
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return timestamp()


def media_filename(message_type: str, content: dict[str, Any], now_ms: int) -> str:
    """媒体文件名：优先用原始文件名，否则 <类型>_<毫秒时间戳>.<扩展名>。"""
    if content.get("fileName"):
        return content["fileName"]
    mimetype = content.get("mimetype") or "application/octet-stream"
    ext = mimetype.split("/")[1].split(";")[0] if "/" in mimetype else "bin"
    return f"{message_type.replace('Message', '')}_{now_ms}.{ext}"

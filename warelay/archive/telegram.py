"""
Telegram 媒体归档 - 把入站/出站媒体上传到指定 Telegram 会话保存。

消息记录只保存归档引用（telegram_message_id、telegram_file_id），
需要原文件时通过 fetch(file_id) 从 Telegram 取回。

按 MIME 主类型选择 Bot API 方法：
- image/* → sendPhoto
- video/* → sendVideo
- audio/* → sendAudio
- 其他   → sendDocument
"""

from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from warelay.config.schema import ArchiveConfig
from warelay.utils.helpers import truncate_string

TELEGRAM_API = "https://api.telegram.org"

# MIME 主类型 → (Bot API 方法, 表单字段名)
_UPLOAD_METHODS = {
    "image": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "audio": ("sendAudio", "audio"),
}
_DEFAULT_METHOD = ("sendDocument", "document")


@dataclass
class MediaMetadata:
    """随媒体一起写入说明文字的元数据。"""
    unique_id: str
    filename: str
    mimetype: str
    size: int
    sender_jid: str
    sender_phone: str | None
    sender_name: str
    message_type: str
    received_at: str
    from_me: bool = False
    is_reply: bool = False
    reply_to_message_id: str | None = None
    reply_to_text: str | None = None


@dataclass
class ArchiveResult:
    """上传结果。"""
    ok: bool
    telegram_message_id: str | None = None
    telegram_file_id: str | None = None
    chat_id: str | None = None
    error: str | None = None


def build_caption(meta: MediaMetadata) -> str:
    """生成带元数据的说明文字（Markdown）。"""
    lines = [
        "📎 *Media File*",
        "",
        f"🆔 *Unique ID:* `{meta.unique_id}`",
        f"👤 *Sender:* {meta.sender_name}",
        f"📱 *Phone:* {meta.sender_phone or 'N/A'}",
        f"📧 *JID:* `{meta.sender_jid}`",
        f"📝 *Type:* {meta.message_type}",
        f"📏 *Size:* {meta.size / 1024:.2f} KB",
        f"🕐 *Received:* {meta.received_at}",
        f"📍 *Direction:* {'Outbound (Sent)' if meta.from_me else 'Inbound (Received)'}",
    ]
    if meta.is_reply:
        lines.append("")
        lines.append(f"↩️ *Reply to:* {meta.reply_to_message_id}")
        if meta.reply_to_text:
            lines.append(f"💬 *Original:* {truncate_string(meta.reply_to_text, 100)}")
    return "\n".join(lines)


def _extract_file_id(result: dict[str, Any]) -> str | None:
    """从 Bot API 返回的消息中取出文件 ID（图片取最大尺寸）。"""
    if result.get("photo"):
        return result["photo"][-1].get("file_id")
    for field in ("video", "audio", "document"):
        if result.get(field):
            return result[field].get("file_id")
    return None


class TelegramArchive:
    """Telegram 归档客户端。"""

    def __init__(self, config: ArchiveConfig, client: httpx.AsyncClient | None = None, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.config.enabled and self.config.bot_token and self.config.chat_id)

    def _api(self, method: str) -> str:
        return f"{TELEGRAM_API}/bot{self.config.bot_token}/{method}"

    async def upload(self, data: bytes, meta: MediaMetadata) -> ArchiveResult:
        """
        上传媒体。

        参数:
            data: 媒体二进制内容
            meta: 元数据（用于选择方法和生成说明文字）

        返回:
            ArchiveResult；失败时 ok=False 并带错误信息，不抛出异常
        """
        category = meta.mimetype.split("/")[0]
        method, field = _UPLOAD_METHODS.get(category, _DEFAULT_METHOD)
        logger.info(f"Uploading {meta.filename} ({meta.size / 1024:.2f} KB) to Telegram...")

        try:
            response = await self._client.post(
                self._api(method),
                data={
                    "chat_id": self.config.chat_id,
                    "caption": build_caption(meta),
                    "parse_mode": "Markdown",
                },
                files={field: (meta.filename, data, meta.mimetype)},
                timeout=self.timeout,
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Telegram upload failed: {e}")
            return ArchiveResult(ok=False, error=str(e))

        if not body.get("ok"):
            error = body.get("description") or f"HTTP {response.status_code}"
            logger.error(f"Telegram upload failed: {error}")
            return ArchiveResult(ok=False, error=error)

        result = body.get("result") or {}
        file_id = _extract_file_id(result)
        logger.info(f"Uploaded to Telegram - Message ID: {result.get('message_id')}, File ID: {file_id}")
        return ArchiveResult(
            ok=True,
            telegram_message_id=str(result.get("message_id")),
            telegram_file_id=file_id,
            chat_id=str((result.get("chat") or {}).get("id")),
        )

    async def fetch(self, file_id: str) -> bytes | None:
        """按 file_id 取回媒体内容；失败时返回 None。"""
        try:
            info = await self._client.get(self._api("getFile"), params={"file_id": file_id})
            body = info.json()
            if not body.get("ok"):
                logger.error(f"Failed to get file info from Telegram: {body.get('description')}")
                return None
            file_path = body["result"]["file_path"]
            response = await self._client.get(
                f"{TELEGRAM_API}/file/bot{self.config.bot_token}/{file_path}",
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.content
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Telegram download failed: {e}")
            return None

    async def close(self) -> None:
        await self._client.aclose()

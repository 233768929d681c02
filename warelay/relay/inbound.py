"""
入站消息转发 - 处理会话推送的消息批次。

每条消息的处理流程：
1. 过滤：缺少 key/message 的消息、协议内部类型（见 IGNORED_TYPES）直接跳过
2. 提取文本、回复、表情回应；媒体消息下载后上传到归档（超过大小上限则跳过下载）
3. 保存消息记录（包括自己发出的消息）
4. 非自己发出的消息：发送已读回执，并转发到所有 Webhook

单条消息失败只记录日志，不影响同一批次的其他消息。
"""

import time
from typing import Any, Callable

from loguru import logger

from warelay.archive.telegram import MediaMetadata, TelegramArchive
from warelay.bus.events import MessageRecord
from warelay.relay.extract import (
    IGNORED_TYPES,
    MEDIA_TYPES,
    extract_content,
    get_content_type,
    media_filename,
    message_timestamp,
)
from warelay.session.client import SessionClient
from warelay.store.records import MessageRepository
from warelay.utils.helpers import extract_plain_phone, generate_media_id, is_personal_chat, to_int
from warelay.webhook.dispatcher import WebhookDispatcher

# 会推送给我们的消息批次类型：notify 为实时消息，append 包含自己在其他设备上发出的消息
HANDLED_UPSERT_TYPES = ("notify", "append")


class MessageRelay:
    """
    入站消息处理器。

    通过 ConnectionSupervisor(on_messages=relay.handle_upsert) 接入。
    """

    def __init__(
        self,
        session_provider: Callable[[], SessionClient | None],
        repository: MessageRepository,
        dispatcher: WebhookDispatcher,
        archive: TelegramArchive | None = None,
        max_media_size: int = 50 * 1024 * 1024,
    ):
        self.session_provider = session_provider
        self.repository = repository
        self.dispatcher = dispatcher
        self.archive = archive
        self.max_media_size = max_media_size

    async def handle_upsert(self, upsert: dict[str, Any]) -> None:
        """处理一个消息批次。"""
        if upsert.get("type") not in HANDLED_UPSERT_TYPES:
            return
        for msg in upsert.get("messages") or []:
            try:
                await self.handle_message(msg)
            except Exception as e:
                logger.error(f"Message handler: {e}")

    async def handle_message(self, msg: dict[str, Any]) -> MessageRecord | None:
        """
        处理单条消息。

        返回:
            保存的消息记录；被跳过的消息返回 None
        """
        key = msg.get("key") if isinstance(msg, dict) else None
        message = msg.get("message") if isinstance(msg, dict) else None
        if not key or not message:
            return None

        message_type = get_content_type(message)
        if not message_type or message_type in IGNORED_TYPES:
            return None

        jid = key.get("remoteJid", "")
        plain_phone = extract_plain_phone(jid)
        display_name = msg.get("pushName") or plain_phone or "Unknown"
        from_me = bool(key.get("fromMe"))
        received_at = message_timestamp(msg)
        logger.info(f"{message_type} from {'ME' if from_me else display_name} ({plain_phone})")

        content = message[message_type]
        extracted = extract_content(message_type, content)
        record = MessageRecord(
            message_id=key.get("id", ""),
            jid=jid,
            from_plain_phone=plain_phone,
            display_name="Me" if from_me else display_name,
            type=message_type,
            text=extracted.text,
            reaction_text=extracted.reaction_text,
            is_reply=extracted.is_reply,
            reply_to_message_id=extracted.reply_to_message_id,
            reply_to_text=extracted.reply_to_text,
            chat_type="personal" if is_personal_chat(jid) else "group",
            from_me=from_me,
            received_at=received_at,
            raw=msg,
            direction="outbound" if from_me else "inbound",
        )

        if message_type in MEDIA_TYPES and isinstance(content, dict):
            await self._archive_media(msg, message_type, content, record)

        await self.repository.save(record)

        if from_me:
            logger.info(f"Skipping webhook forward for own message: {record.message_id}")
            return record

        await self._send_read_receipt(key)
        # Webhook 载荷中的 display_name 始终是对方名称
        payload = record.to_webhook_payload()
        payload["display_name"] = display_name
        await self.dispatcher.dispatch(payload)
        return record

    async def _send_read_receipt(self, key: dict[str, Any]) -> None:
        session = self.session_provider()
        if session is None:
            return
        try:
            await session.read_messages([key])
            logger.debug(f"Read receipt sent for message {key.get('id')}")
        except Exception as e:
            logger.warning(f"Failed to send read receipt: {e}")

    async def _archive_media(
        self,
        msg: dict[str, Any],
        message_type: str,
        content: dict[str, Any],
        record: MessageRecord,
    ) -> None:
        """下载媒体并上传到归档，把归档引用写回 record。失败只记录日志。"""
        mimetype = content.get("mimetype") or "application/octet-stream"
        declared_size = to_int(content.get("fileLength"))
        record.media_mimetype = mimetype

        if declared_size > self.max_media_size:
            logger.warning(
                f"Media too large: {declared_size / 1024 / 1024:.2f}MB "
                f"(max {self.max_media_size / 1024 / 1024:.0f}MB)"
            )
            return

        session = self.session_provider()
        if session is None or self.archive is None or not self.archive.enabled:
            logger.debug(f"Media archive unavailable, recording {message_type} without upload")
            return

        try:
            logger.info(f"Downloading {message_type}...")
            data = await session.download_media(msg)
        except Exception as e:
            logger.error(f"Media download error: {e}")
            return
        if not data:
            return

        filename = media_filename(message_type, content, int(time.time() * 1000))
        unique_id = generate_media_id()
        record.media_unique_id = unique_id
        record.media_filename = filename
        record.media_size = len(data)

        result = await self.archive.upload(data, MediaMetadata(
            unique_id=unique_id,
            filename=filename,
            mimetype=mimetype,
            size=len(data),
            sender_jid=record.jid,
            sender_phone=record.from_plain_phone,
            sender_name=record.display_name,
            message_type=message_type,
            received_at=record.received_at,
            from_me=record.from_me,
            is_reply=record.is_reply,
            reply_to_message_id=record.reply_to_message_id,
            reply_to_text=record.reply_to_text,
        ))
        record.telegram_message_id = result.telegram_message_id
        record.telegram_file_id = result.telegram_file_id

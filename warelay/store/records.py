"""
只追加的记录表 - 连接事件日志与消息记录。

- ConnectionLogWriter：写 connection_logs(event_type, status_code, reason, attempt_number, timestamp)
- MessageRepository：写 messages（每条观察到或发出的消息一行），并按媒体 ID 反查归档引用

两者都是"尽力而为"：写入失败只记录日志并返回 False，绝不打断会话主流程。
"""

from typing import Any

from loguru import logger

from warelay.bus.events import ConnectionEvent, MessageRecord
from warelay.errors import TransientNetworkError

CONNECTION_LOGS_TABLE = "connection_logs"
MESSAGES_TABLE = "messages"


class ConnectionLogWriter:
    """连接事件日志写入器。"""

    def __init__(self, client: Any):
        self.client = client

    async def record(self, event: ConnectionEvent) -> bool:
        """追加一条连接事件。"""
        try:
            await self.client.insert(CONNECTION_LOGS_TABLE, event.to_row())
            return True
        except TransientNetworkError as e:
            logger.error(f"Failed to log connection event: {e}")
            return False


class MessageRepository:
    """消息记录仓库。"""

    def __init__(self, client: Any):
        self.client = client

    async def save(self, record: MessageRecord) -> bool:
        """
        保存一条消息记录。

        返回:
            True 表示写入成功
        """
        try:
            await self.client.insert(MESSAGES_TABLE, record.to_row())
        except TransientNetworkError as e:
            logger.error(f"DB save error: {e}")
            return False

        tag = "[OUTGOING]" if record.from_me else "[INCOMING]"
        media = f" [Media: {record.media_unique_id}]" if record.media_unique_id else ""
        logger.debug(f"Message saved: {record.type} ({record.direction}) {tag}{media}")
        return True

    async def find_media(self, media_unique_id: str) -> dict[str, Any] | None:
        """按媒体唯一 ID 查询归档引用（telegram_file_id、文件名、MIME 类型）。"""
        return await self.client.select_one(
            MESSAGES_TABLE,
            {"media_unique_id": media_unique_id},
            columns="telegram_file_id,media_filename,media_mimetype",
        )

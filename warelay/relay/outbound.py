"""
出站发送 - 所有发送都经由 DeliveryQueue 串行、节流地交给当前会话。

发送的内容按 MIME 主类型构造：
- image / video：二进制 + 说明文字（text 作为 caption）
- audio：二进制
- 其他：document，缺省文件名 "document"
- 无文件：纯文本

发出的消息保存为 outbound 记录，但不会转发到 Webhook。
"""

from typing import Any

from loguru import logger

from warelay.bus.events import MessageRecord, SendRequest
from warelay.bus.queue import DeliveryQueue
from warelay.session.supervisor import ConnectionSupervisor
from warelay.store.records import MessageRepository
from warelay.utils.helpers import extract_plain_phone, is_personal_chat


def build_content(request: SendRequest) -> dict[str, Any]:
    """根据发送请求构造会话层消息内容。"""
    if not request.file_bytes:
        return {"text": request.text}

    category = request.media_category
    if category in ("image", "video"):
        return {
            category: request.file_bytes,
            "caption": request.text or "",
            "mimetype": request.mimetype,
            "fileName": request.filename,
        }
    if category == "audio":
        return {"audio": request.file_bytes, "mimetype": request.mimetype, "fileName": request.filename}
    return {
        "document": request.file_bytes,
        "mimetype": request.mimetype,
        "fileName": request.filename or "document",
    }


class MessageSender:
    """出站发送器。"""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        queue: DeliveryQueue,
        repository: MessageRepository | None = None,
        max_file_size: int = 100 * 1024 * 1024,
    ):
        self.supervisor = supervisor
        self.queue = queue
        self.repository = repository
        self.max_file_size = max_file_size

    async def send(self, request: SendRequest) -> dict[str, Any]:
        """
        发送一条消息。

        参数:
            request: 发送请求

        返回:
            会话层返回的已发送消息信息（含 key.id）

        异常:
            ValueError: 请求不满足发送契约
            DeliveryFailure: 未连接或会话发送失败
            FatalSessionError: 会话处于 FATAL 状态
        """
        request.validate(self.max_file_size)
        self.supervisor.require_session()
        return await self.queue.enqueue(lambda: self._send_now(request))

    async def _send_now(self, request: SendRequest) -> dict[str, Any]:
        # 排队期间可能已断线，执行前重新获取会话
        session = self.supervisor.require_session()
        try:
            sent = await session.send_message(request.target, build_content(request))
        except Exception as e:
            logger.error(f"Send failed: {e}")
            raise

        logger.info(f"Sent to {extract_plain_phone(request.target) or request.target}")
        if self.repository is not None:
            await self.repository.save(self._outbound_record(request, sent))
        return sent

    @staticmethod
    def _outbound_record(request: SendRequest, sent: dict[str, Any]) -> MessageRecord:
        has_file = bool(request.file_bytes)
        return MessageRecord(
            message_id=(sent.get("key") or {}).get("id", ""),
            jid=request.target,
            from_plain_phone=extract_plain_phone(request.target),
            display_name="Me (Bot)",
            type=f"{request.media_category}Message" if has_file else "conversation",
            text=request.text or ("[Media]" if has_file else None),
            media_mimetype=request.mimetype,
            media_filename=request.filename,
            media_size=len(request.file_bytes) if has_file else None,
            chat_type="personal" if is_personal_chat(request.target) else "group",
            from_me=True,
            raw=sent,
            direction="outbound",
        )

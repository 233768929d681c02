"""
消息转发模块 - 入站消息的记录与 Webhook 转发，出站消息的排队发送。

本模块包含：
- extract：消息类型、文本、回复与表情回应的提取
- inbound：MessageRelay，处理会话推送的消息批次
- outbound：MessageSender，经由 DeliveryQueue 发送消息
"""

from warelay.relay.inbound import MessageRelay
from warelay.relay.outbound import MessageSender, build_content

__all__ = ["MessageRelay", "MessageSender", "build_content"]

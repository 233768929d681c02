"""
事件与投递队列模块 - 会话、存储与出站发送之间的数据结构和串行通道。

数据流向：
  会话生命周期 → LifecycleEvent → 订阅者（在线状态、连接日志）
  入站消息     → MessageRecord  → messages 表 / Webhook 载荷
  出站发送     → SendRequest    → DeliveryQueue → 会话

【Java 开发者类比】
- DeliveryQueue 类似于单线程 Executor + CompletableFuture
- 各事件类型类似于 DTO（Data Transfer Object）
"""

from warelay.bus.events import ConnectionEvent, LifecycleEvent, MessageRecord, SendRequest
from warelay.bus.queue import DeliveryQueue

__all__ = ["DeliveryQueue", "LifecycleEvent", "ConnectionEvent", "MessageRecord", "SendRequest"]

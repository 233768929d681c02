"""
会话模块 - 长连接消息会话的连接监督、状态机与桥接客户端。

本模块包含：
- client：SessionClient 抽象与回调定义
- state：纯函数状态机（transition）与断线分类
- supervisor：ConnectionSupervisor，唯一拥有会话句柄的组件
- bridge：基于 WebSocket 桥接服务的 SessionClient 实现
"""

from warelay.session.client import SessionCallbacks, SessionClient, SessionFactory
from warelay.session.state import ConnectionState, ReconnectPolicy, transition
from warelay.session.supervisor import ConnectionSupervisor

__all__ = [
    "ConnectionSupervisor",
    "ConnectionState",
    "ReconnectPolicy",
    "SessionCallbacks",
    "SessionClient",
    "SessionFactory",
    "transition",
]

"""
保活模块 - 连接期间的在线状态更新与进程自 ping。

二开提示：
- 可扩展为定期向运维频道上报连接状态（配合 ConnectionSupervisor.status()）
"""

from warelay.heartbeat.service import PresenceService, SelfPingService

__all__ = ["PresenceService", "SelfPingService"]

"""
持久化模块 - 远程存储上的凭据、连接日志与消息记录。

本模块包含：
- rest：PostgREST 协议的 httpx 异步客户端
- codec：带二进制字段（Buffer）复活的 JSON 编解码
- locks：按键互斥的写入串行器
- credentials：主副本 + 备份副本的凭据存储
- auth_state：协议层所需的凭据/密钥视图
- records：只追加的连接日志与消息记录
"""

from warelay.store.auth_state import AuthState, load_auth_state
from warelay.store.credentials import CredentialStore, ReadOutcome, ReadResult
from warelay.store.locks import WriteSerializer
from warelay.store.records import ConnectionLogWriter, MessageRepository
from warelay.store.rest import RestStoreClient

__all__ = [
    "AuthState",
    "load_auth_state",
    "CredentialStore",
    "ReadOutcome",
    "ReadResult",
    "WriteSerializer",
    "ConnectionLogWriter",
    "MessageRepository",
    "RestStoreClient",
]

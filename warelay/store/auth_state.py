"""
会话认证状态 - 把 CredentialStore 包装成协议库需要的"凭据 + 密钥 KV"接口。

协议库（经由桥接服务）需要两样东西：
- creds：账号级凭据（noiseKey、signedIdentityKey、signedPreKey、me 等）
- keys：按类别存放的协议密钥（pre-key、session、sender-key、app-state-sync-key ...），
  通过 get(category, ids) / set({category: {id: value}}) 读写

本模块负责：
1. 启动时加载 creds.json；不存在则生成新凭据并持久化一次
2. 凭据不完整时用新生成的材料补齐缺失字段并回写（DegradedAuthError 路径）
3. 提供按 "<category>-<id>.json" 命名的密钥读写，批量写入时每批 5 个、批间暂停 0.1s
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from warelay.errors import DegradedAuthError, TransientNetworkError
from warelay.store.credentials import CredentialStore, ReadOutcome

CREDS_KEY = "creds.json"

# 缺少任意一个即视为凭据不完整
REQUIRED_CREDS_FIELDS = ("noiseKey", "signedIdentityKey", "signedPreKey")
# 修复时一并补齐的字段
REPAIRABLE_CREDS_FIELDS = REQUIRED_CREDS_FIELDS + ("advSecretKey",)

CredsFactory = Callable[[], Awaitable[dict[str, Any]]]


def check_creds(creds: dict[str, Any]) -> None:
    """
    检查凭据是否完整。

    异常:
        DegradedAuthError: 缺少必需字段（异常消息中列出缺失项）
    """
    missing = [f for f in REQUIRED_CREDS_FIELDS if not creds.get(f)]
    if missing:
        raise DegradedAuthError(f"Incomplete credentials: missing {', '.join(missing)}")


def key_file(category: str, key_id: str) -> str:
    """协议密钥的逻辑键：<category>-<id>.json"""
    return f"{category}-{key_id}.json"


class SignalKeyStore:
    """协议密钥 KV 视图（category + id → value）。"""

    def __init__(
        self,
        store: CredentialStore,
        batch_size: int = 5,
        batch_pause: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self._sleep = sleep

    async def get(self, category: str, ids: list[str]) -> dict[str, Any]:
        """并发读取一组密钥，缺失的 id 映射为 None。"""
        values = await asyncio.gather(*(self.store.read(key_file(category, i)) for i in ids))
        return dict(zip(ids, values))

    async def set(self, data: dict[str, dict[str, Any]]) -> None:
        """
        批量写入/删除密钥。

        只有值为 None 才删除该键，空字典等假值按写入处理。每批最多 batch_size 个并发操作，
        批与批之间暂停 batch_pause 秒；单批出错只记录日志，继续后续批次。
        """
        operations: list[tuple[str, Any]] = []
        for category, entries in data.items():
            for key_id, value in entries.items():
                operations.append((key_file(category, key_id), value))

        for start in range(0, len(operations), self.batch_size):
            batch = operations[start:start + self.batch_size]
            tasks = [
                self.store.write(file, value) if value is not None else self.store.remove(file)
                for file, value in batch
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for (file, _), result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(f"Batch write error for {file}: {result}")
                elif result is False:
                    logger.error(f"Batch write failed for {file}")

            if start + self.batch_size < len(operations):
                await self._sleep(self.batch_pause)


@dataclass
class AuthState:
    """
    一次连接尝试所使用的认证状态。

    属性:
        creds: 账号凭据（可变字典，creds.update 事件会原地合并）
        keys: 协议密钥视图
        store: 底层凭据存储
    """
    creds: dict[str, Any]
    keys: SignalKeyStore
    store: CredentialStore

    @property
    def account_id(self) -> str | None:
        """已配对账号的 ID；尚未配对时为 None。"""
        me = self.creds.get("me") or {}
        return me.get("id")

    def update_creds(self, update: dict[str, Any]) -> None:
        """合并协议库推送的凭据增量。"""
        self.creds.update(update)

    async def save_creds(self) -> bool:
        """持久化当前凭据。"""
        return await self.store.write(CREDS_KEY, self.creds)


async def load_auth_state(store: CredentialStore, creds_factory: CredsFactory) -> AuthState:
    """
    加载（或初始化/修复）认证状态。

    参数:
        store: 凭据存储
        creds_factory: 生成一套全新凭据的协程工厂（由协议层提供）

    返回:
        AuthState

    异常:
        TransientNetworkError: 存储不可达。此时不能生成新凭据，
            否则会在存储恢复后覆盖掉原有会话
    """
    logger.info("Loading auth state from store...")
    result = await store.read_result(CREDS_KEY)

    if result.outcome == ReadOutcome.UNAVAILABLE:
        raise TransientNetworkError("credential store unavailable while loading creds")

    creds = result.value if isinstance(result.value, dict) else None

    if creds is None:
        logger.warning("No existing credentials - initializing new session")
        creds = await creds_factory()
        await store.write(CREDS_KEY, creds)
    else:
        try:
            check_creds(creds)
            logger.info(f"Credentials loaded - ID: {(creds.get('me') or {}).get('id', 'new')}")
        except DegradedAuthError as e:
            logger.warning(f"{e} - attempting to repair")
            fresh = await creds_factory()
            for field in REPAIRABLE_CREDS_FIELDS:
                if not creds.get(field):
                    creds[field] = fresh.get(field)
            await store.write(CREDS_KEY, creds)
            logger.info("Credentials repaired - attempting to use")

    return AuthState(creds=creds, keys=SignalKeyStore(store), store=store)

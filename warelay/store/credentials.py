"""
凭据持久化存储 - 远程 KV 服务上的"主副本 + 备份副本"协议。

每个逻辑键（如 creds.json、pre-key-12.json）在 auth_data 表中对应两行：
- <flat_name>         主副本
- <flat_name>.backup  备份副本：始终保存"上一次成功覆盖之前"的主副本内容

【写入协议】（在按键互斥锁内执行，任何一步失败都使本次尝试失败）
1. 校验 blob 是结构化值（dict/list）
2. 序列化；结果为空（""/null/{}）则拒绝
3. 反序列化再序列化做自检；不一致则拒绝
4. 读取当前主副本，存在则先复制到备份行（先备份后覆盖）
5. upsert 新主副本
6. 回读主副本并验证可反序列化；失败则视为写入失败（即使数据已落盘）
最多 3 次尝试，失败后等待 attempt * 1s；耗尽后返回 False，不回滚（尽力而为，非事务）。

【读取协议】
主副本正常 → 返回；主副本缺失或损坏 → 尝试备份；备份有效 → 回填主副本（自愈）并返回；
备份也无效 → 对主副本做降级解析（不复活 Buffer）；仍失败 → 返回 None。
损坏事件与"未找到"在日志中明确区分。

读取不加锁：读到"正在备份中"的中间状态是可以接受的，因为读取协议本身能容忍并修复。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from warelay.errors import CorruptStateError, TransientNetworkError
from warelay.store import codec
from warelay.store.locks import WriteSerializer
from warelay.utils.helpers import flat_file_name, timestamp
from warelay.utils.retry import RetryPolicy, retry_async

AUTH_TABLE = "auth_data"
AUTH_CONFLICT = "session_id,file_name"
BACKUP_SUFFIX = ".backup"

# 序列化结果为这些值时视为"空数据"，拒绝写入
_EMPTY_PAYLOADS = {"", "null", "{}"}


class ReadOutcome(str, Enum):
    """读取的终态分类，供调用方和日志区分"未找到"与"损坏"。"""
    FOUND = "found"                  # 主副本正常
    NOT_FOUND = "not_found"          # 主、备份都不存在
    RECOVERED = "recovered"          # 主副本缺失/损坏，已从备份恢复
    SALVAGED = "salvaged"            # 主、备份都无法正常解码，降级解析成功
    UNRECOVERABLE = "unrecoverable"  # 数据已损坏且无法恢复（数据丢失）
    UNAVAILABLE = "unavailable"      # 存储服务不可达


@dataclass
class ReadResult:
    """一次读取的结果：值 + 终态。"""
    value: Any
    outcome: ReadOutcome

    @property
    def found(self) -> bool:
        return self.value is not None


class CredentialStore:
    """
    凭据存储 - 对外提供 write / read / remove / clear 四个操作。

    属性:
        session_id: 会话 ID，所有行都以它为第一维隔离
        write_policy: 写入重试策略（默认 3 次，线性 1s 递增）
    """

    def __init__(
        self,
        client: Any,
        session_id: str,
        serializer: WriteSerializer | None = None,
        write_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        参数:
            client: 远程存储客户端（RestStoreClient 或同接口的替身）
            session_id: 会话 ID
            serializer: 按键互斥锁表，多个 CredentialStore 共享时传入同一实例
            write_policy: 写入重试策略
            sleep: 重试等待函数（测试中可替换为立即返回）
        """
        self.client = client
        self.session_id = session_id
        self.serializer = serializer or WriteSerializer()
        self.write_policy = write_policy or RetryPolicy.linear(max_attempts=3, step=1.0)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # 行级原语
    # ------------------------------------------------------------------

    def _row_filter(self, file_name: str) -> dict[str, str]:
        return {"session_id": self.session_id, "file_name": file_name}

    async def _fetch(self, file_name: str) -> str | None:
        """读取一行的 file_data 原始字符串，不存在时返回 None。"""
        row = await self.client.select_one(AUTH_TABLE, self._row_filter(file_name), columns="file_data")
        if not row:
            return None
        return row.get("file_data") or None

    async def _put(self, file_name: str, raw: str) -> None:
        """upsert 一行。"""
        await self.client.upsert(
            AUTH_TABLE,
            {
                "session_id": self.session_id,
                "file_name": file_name,
                "file_data": raw,
                "updated_at": timestamp(),
            },
            on_conflict=AUTH_CONFLICT,
        )

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def write(self, key: str, blob: Any) -> bool:
        """
        按写入协议持久化 blob。

        参数:
            key: 逻辑键（如 "creds.json"）
            blob: 结构化值（dict/list，可包含 bytes 字段）

        返回:
            True 表示写入并验证成功；False 表示重试耗尽（可能已部分落盘）
        """
        lock_key = f"{self.session_id}:{key}"
        return await self.serializer.with_key_lock(lock_key, lambda: self._write_with_retry(key, blob))

    async def _write_with_retry(self, key: str, blob: Any) -> bool:
        result = await retry_async(
            lambda: self._write_once(key, blob),
            self.write_policy,
            label=f"Write {key}",
            sleep=self._sleep,
        )
        if not result.ok:
            logger.error(f"Failed to write {key} after {result.attempts} attempts")
            return False
        return True

    async def _write_once(self, key: str, blob: Any) -> None:
        """执行一次完整的写入协议（六个步骤）。"""
        # 1. 结构校验
        if not isinstance(blob, (dict, list)):
            raise CorruptStateError("Invalid data structure")

        # 2. 序列化
        try:
            serialized = codec.dumps(blob)
        except (TypeError, ValueError) as e:
            raise CorruptStateError(f"Serialization failed: {e}") from e
        if serialized in _EMPTY_PAYLOADS:
            raise CorruptStateError("Serialization produced invalid data")

        # 3. 往返自检
        if codec.dumps(codec.loads(serialized)) != serialized:
            raise CorruptStateError("Data validation failed: round trip mismatch")

        name = flat_file_name(key)

        # 4. 先备份后覆盖
        existing = await self._fetch(name)
        if existing:
            await self._put(name + BACKUP_SUFFIX, existing)

        # 5. 写主副本
        await self._put(name, serialized)

        # 6. 回读验证
        verified = await self._fetch(name)
        if not verified:
            raise TransientNetworkError("Write verification failed - data not found")
        try:
            codec.loads(verified)
        except CorruptStateError as e:
            raise CorruptStateError("Write verification failed - data corrupted") from e

        if key == "creds.json":
            logger.info("Credentials saved to store (atomic)")

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    async def read(self, key: str) -> Any | None:
        """读取 key 的值；未找到或无法恢复时返回 None。"""
        return (await self.read_result(key)).value

    async def read_result(self, key: str) -> ReadResult:
        """
        按读取协议读取 key，返回值和终态。

        存储不可达时不抛异常，而是返回 UNAVAILABLE（值为 None）。
        """
        try:
            return await self._read(key)
        except TransientNetworkError as e:
            logger.error(f"Failed to read {key}: {e}")
            return ReadResult(None, ReadOutcome.UNAVAILABLE)

    async def _read(self, key: str) -> ReadResult:
        name = flat_file_name(key)
        primary = await self._fetch(name)

        if primary is None:
            restored = await self._restore_from_backup(key, name)
            if restored is not None:
                logger.warning(f"Primary missing {key} - restored from backup")
                return ReadResult(restored, ReadOutcome.RECOVERED)
            return ReadResult(None, ReadOutcome.NOT_FOUND)

        try:
            return ReadResult(codec.loads(primary), ReadOutcome.FOUND)
        except CorruptStateError:
            logger.warning(f"Corrupted {key} - trying backup")

        restored = await self._restore_from_backup(key, name)
        if restored is not None:
            logger.info(f"Recovered {key} from backup")
            return ReadResult(restored, ReadOutcome.RECOVERED)

        logger.warning(f"Attempting salvage {key}")
        try:
            return ReadResult(codec.salvage(primary), ReadOutcome.SALVAGED)
        except CorruptStateError:
            logger.error(f"Unrecoverable {key}")
            return ReadResult(None, ReadOutcome.UNRECOVERABLE)

    async def _restore_from_backup(self, key: str, name: str) -> Any | None:
        """
        读取并校验备份；有效时回填主副本并返回其值，否则返回 None。

        回填失败只记录日志，不影响本次返回值。
        """
        backup = await self._fetch(name + BACKUP_SUFFIX)
        if backup is None:
            return None
        try:
            value = codec.loads(backup)
        except CorruptStateError:
            logger.warning(f"Backup also corrupted {key}")
            return None

        try:
            await self._put(name, backup)
        except TransientNetworkError as e:
            logger.warning(f"Could not repair primary {key} from backup: {e}")
        return value

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------

    async def remove(self, key: str) -> None:
        """
        删除 key 的主副本和备份副本。

        备份必须一起删除，否则下一次读取会把已删除的键从备份"恢复"回来。
        """
        name = flat_file_name(key)

        async def _delete() -> None:
            for file_name in (name, name + BACKUP_SUFFIX):
                await self.client.delete(AUTH_TABLE, self._row_filter(file_name))

        try:
            await self.serializer.with_key_lock(f"{self.session_id}:{key}", _delete)
        except TransientNetworkError as e:
            logger.error(f"Failed to remove {key}: {e}")

    async def clear(self) -> bool:
        """
        删除本会话的全部凭据行（外部显式重置会话时使用）。

        返回:
            是否删除成功
        """
        logger.warning(f"Clearing session {self.session_id} from store...")
        try:
            await self.client.delete(AUTH_TABLE, {"session_id": self.session_id})
        except TransientNetworkError as e:
            logger.error(f"Error clearing session: {e}")
            return False
        logger.info("All auth data deleted from store")
        return True

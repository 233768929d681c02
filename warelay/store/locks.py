"""
按键互斥写入 - 同一键的写入必须在进程内串行。

远程存储没有原生行锁，这里为每个键维护一把 asyncio.Lock：
- 同一键：最多一个写入在执行，其余协程在锁上挂起等待
- 不同键：互不阻塞
- 无论成功还是异常，锁都会通过 async with 自动释放
- 最后一个使用者离开后删除该键的锁，避免字典无限增长
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

T = TypeVar("T")


class WriteSerializer:
    """按键互斥的协程锁表。"""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}  # 持有或等待该键锁的协程数

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """获取 key 的独占锁（上下文管理器形式）。"""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    async def with_key_lock(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        在 key 的独占锁内执行 fn 并返回其结果。

        参数:
            key: 互斥键（通常是 "session_id:逻辑键"）
            fn: 无参协程工厂

        返回:
            fn() 的返回值；fn 抛出的异常原样传播（锁仍会释放）
        """
        async with self.hold(key):
            return await fn()

    def is_locked(self, key: str) -> bool:
        """key 当前是否有写入在执行。"""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)

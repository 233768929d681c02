"""
出站投递队列模块 - 严格 FIFO、单工作协程、带节流间隔的任务队列。

调用方（发送接口）不直接触碰会话对象，而是把"发送动作"封装成任务交给队列：

  调用方 → enqueue(task) → 待处理队列 → 工作协程逐个执行 → future 返回结果/异常

【核心约束】
- 同一时刻最多一个工作协程；空闲时 enqueue 会启动它，运行中 enqueue 只追加
- 前一个任务完成到下一个任务开始之间至少间隔 pacing_delay 秒（下游会话的限流要求）
- 任务失败只记录日志并把异常交给该任务自己的 future，队列继续处理下一个；
  失败的任务不会重新入队

【Java 开发者类比】
- 类似于单线程的 ExecutorService（Executors.newSingleThreadExecutor）
- enqueue 返回的 asyncio.Future 类似于 CompletableFuture
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from warelay.errors import DeliveryFailure

T = TypeVar("T")

QueueTask = Callable[[], Awaitable[Any]]


class DeliveryQueue:
    """
    串行投递队列。

    属性:
        pacing_delay: 相邻两个任务之间的最小间隔（秒）
    """

    def __init__(
        self,
        pacing_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pacing_delay = pacing_delay
        self._sleep = sleep
        self._pending: deque[tuple[QueueTask, asyncio.Future]] = deque()
        self._worker: asyncio.Task | None = None
        self._last_finished: float | None = None  # 上一个任务完成时的 loop 时间

    def enqueue(self, task: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """
        追加一个任务，返回其结果 future。

        参数:
            task: 无参协程工厂，轮到它时才会被调用

        返回:
            asyncio.Future，任务成功时得到返回值，失败时得到其异常
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.append((task, future))
        if not self.is_running:
            self._worker = asyncio.create_task(self._run())
        return future

    async def _run(self) -> None:
        """工作协程：按 FIFO 顺序执行，直到队列清空后退出。"""
        loop = asyncio.get_running_loop()
        while self._pending:
            task, future = self._pending.popleft()
            if future.cancelled():
                continue

            # 节流：距离上一个任务完成不足 pacing_delay 时补足等待
            if self._last_finished is not None:
                remaining = self.pacing_delay - (loop.time() - self._last_finished)
                if remaining > 0:
                    await self._sleep(remaining)

            try:
                result = await task()
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                logger.error(f"Queue task error: {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                self._last_finished = loop.time()

    async def stop(self) -> None:
        """停止工作协程，并让所有未执行任务的 future 以 DeliveryFailure 结束。"""
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        while self._pending:
            _, future = self._pending.popleft()
            if not future.done():
                future.set_exception(DeliveryFailure("delivery queue stopped"))

    @property
    def is_running(self) -> bool:
        """工作协程是否正在运行。"""
        return self._worker is not None and not self._worker.done()

    @property
    def size(self) -> int:
        """等待执行的任务数（不含正在执行的那一个）。"""
        return len(self._pending)

"""
通用有限重试组合子 - 统一所有调用点的重试与退避语义。

凭据写入、Webhook 转发和重连调度共用同一套重试语义，由两部分组成：

- RetryPolicy：描述"最多几次、每次失败后等多久"
  - linear(): 线性递增（attempt * step），用于凭据写入
  - schedule(): 固定延迟表（如 2s/5s/10s），用于 Webhook
  - backoff_delay(): 带上限和抖动的退避，用于重连
- retry_async()：按策略执行一个协程工厂，返回 RetryResult

【Java 开发者类比】
- RetryPolicy 类似于 Spring Retry 的 BackOffPolicy + RetryPolicy 组合
- retry_async() 类似于 RetryTemplate.execute()
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


def backoff_delay(
    attempts: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 1.0,
) -> float:
    """
    计算重连退避延迟（秒）。

    公式：min(max_delay, base_delay * attempts) + uniform(0, jitter)

    参数:
        attempts: 当前尝试次数（从 1 开始）
        base_delay: 基础延迟（秒）
        max_delay: 延迟上限（秒，不含抖动）
        jitter: 抖动上限（秒），用于打散同时重连的客户端

    返回:
        本次应等待的秒数
    """
    delay = min(max_delay, base_delay * max(attempts, 0))
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


@dataclass
class RetryPolicy:
    """
    有限重试策略。

    属性:
        max_attempts: 最大尝试次数（含第一次）
        delays: 第 N 次失败后等待的秒数（下标 N-1）；不足时使用最后一个值
        step: delays 为空时使用线性延迟 attempt * step
    """
    max_attempts: int = 3
    delays: list[float] = field(default_factory=list)
    step: float = 1.0

    @classmethod
    def linear(cls, max_attempts: int, step: float) -> "RetryPolicy":
        """线性递增延迟：第 1 次失败等 step 秒，第 2 次等 2*step 秒……"""
        return cls(max_attempts=max_attempts, step=step)

    @classmethod
    def schedule(cls, max_attempts: int, delays: list[float]) -> "RetryPolicy":
        """固定延迟表：第 N 次失败后等待 delays[N-1] 秒。"""
        return cls(max_attempts=max_attempts, delays=list(delays))

    def delay_after(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间（秒）。"""
        if self.delays:
            return self.delays[min(attempt, len(self.delays)) - 1]
        return attempt * self.step


@dataclass
class RetryResult(Generic[T]):
    """
    一次有限重试的最终结果。

    属性:
        ok: 是否在预算内成功
        value: 成功时的返回值
        attempts: 实际执行的次数
        error: 最后一次失败的异常（成功时为 None）
    """
    ok: bool
    value: T | None = None
    attempts: int = 0
    error: BaseException | None = None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """
    按策略执行协程工厂，直到成功或耗尽重试预算。

    每次失败都会记录 warning 日志（含 attempt/max），最后一次失败不再等待。
    取消（CancelledError）不会被吞掉，直接向上传播。

    参数:
        operation: 无参协程工厂，每次尝试都会重新调用
        policy: 重试策略
        label: 日志中的操作名称
        sleep: 等待函数（测试中可替换）

    返回:
        RetryResult，调用方据此决定如何处理失败（本函数从不抛出业务异常）
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
            return RetryResult(ok=True, value=value, attempts=attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            logger.warning(f"{label} attempt {attempt}/{policy.max_attempts} failed: {e}")
            if attempt < policy.max_attempts:
                delay = policy.delay_after(attempt)
                logger.debug(f"{label}: retrying in {delay}s")
                await sleep(delay)

    return RetryResult(ok=False, attempts=policy.max_attempts, error=last_error)

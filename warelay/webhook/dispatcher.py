"""
Webhook 转发模块 - 把入站消息事件以 JSON POST 扇出到所有配置的端点。

投递语义（至少一次，尽力而为）：
- 每个端点独立重试，默认最多 3 次，失败后依次等待 2s、5s
- 某个端点成功即停止对它的重试；耗尽只记录该端点的终态失败
- 一个端点失败不影响其他端点，也不会向调用方抛出异常
- 不做死信队列：耗尽即丢弃

【Java 开发者类比】
- 类似于 Spring 的 RestTemplate + @Retryable，外加 CompletableFuture.allOf 并发扇出
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from warelay.config.schema import WebhookConfig
from warelay.errors import DeliveryFailure
from warelay.utils.retry import RetryPolicy, retry_async


@dataclass
class DeliveryOutcome:
    """单个端点的投递结果。"""
    ok: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class WebhookDispatcher:
    """
    Webhook 扇出投递器。

    属性:
        urls: 目标端点列表
        policy: 每个端点的重试策略
    """

    def __init__(
        self,
        config: WebhookConfig,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        参数:
            config: Webhook 配置
            client: 可注入的 httpx 客户端（测试中配合 MockTransport 使用）
            sleep: 重试等待函数
        """
        self.config = config
        self.urls = list(config.urls)
        self.policy = RetryPolicy.schedule(config.retries, config.retry_delays)
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._sleep = sleep

    async def dispatch(self, payload: dict[str, Any]) -> dict[str, DeliveryOutcome]:
        """
        把 payload 并发投递到所有端点。

        参数:
            payload: JSON 可序列化的事件载荷

        返回:
            端点 URL → DeliveryOutcome；未配置端点时返回空字典
        """
        if not self.urls:
            logger.warning("No webhook URLs configured, skipping dispatch")
            return {}

        outcomes = await asyncio.gather(*(self._deliver(url, payload) for url in self.urls))
        return dict(zip(self.urls, outcomes))

    async def _deliver(self, url: str, payload: dict[str, Any]) -> DeliveryOutcome:
        """对单个端点执行有限重试投递。"""
        result = await retry_async(
            lambda: self._post(url, payload),
            self.policy,
            label=f"Webhook {url}",
            sleep=self._sleep,
        )
        if result.ok:
            logger.info(f"Webhook sent to {url} (attempt {result.attempts})")
            return DeliveryOutcome(ok=True, attempts=result.attempts, status_code=result.value)

        logger.error(f"Webhook {url} failed after {result.attempts} attempts: {result.error}")
        return DeliveryOutcome(ok=False, attempts=result.attempts, error=str(result.error))

    async def _post(self, url: str, payload: dict[str, Any]) -> int:
        """发送一次 POST；非 2xx 视为失败。"""
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryFailure(f"HTTP {response.status_code}")
        return response.status_code

    async def close(self) -> None:
        await self._client.aclose()

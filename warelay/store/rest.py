"""
远程 KV 存储客户端 - 基于 httpx 的 PostgREST（Supabase REST）精简实现。

只实现本项目用到的五种操作：
- select_one：按等值条件读取单行（406 视为"未找到"）
- select：按等值条件读取多行
- insert：插入一行或多行
- upsert：按冲突列合并写入（resolution=merge-duplicates）
- delete：按等值条件删除

所有网络层失败和非 2xx 响应统一抛出 TransientNetworkError，
由上层的重试策略决定如何恢复。
"""

from typing import Any

import httpx
from loguru import logger

from warelay.errors import TransientNetworkError


class RestStoreClient:
    """
    PostgREST HTTP 客户端。

    属性:
        url: 服务根地址（不含 /rest/v1）
        timeout: 单次请求超时（秒）
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _endpoint(self, table: str) -> str:
        return f"{self.url}/rest/v1/{table}"

    @staticmethod
    def _filters(eq: dict[str, Any] | None) -> dict[str, str]:
        """把 {"col": v} 转为 PostgREST 查询参数 {"col": "eq.v"}。"""
        return {k: f"eq.{v}" for k, v in (eq or {}).items()}

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """发送请求；网络错误与 5xx/4xx 统一转换为 TransientNetworkError（406 由调用方处理）。"""
        try:
            response = await self._client.request(
                method,
                self._endpoint(table),
                params=params,
                json=json,
                headers={**self._headers, **(headers or {})},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400 and response.status_code != 406:
            raise TransientNetworkError(
                f"{method} {table} returned {response.status_code}: {response.text[:200]}"
            )
        return response

    async def select_one(
        self,
        table: str,
        eq: dict[str, Any],
        columns: str = "*",
    ) -> dict[str, Any] | None:
        """
        读取满足条件的单行。

        返回:
            行字典；未找到（406 或空结果）时返回 None
        """
        params = {"select": columns, **self._filters(eq)}
        response = await self._request(
            "GET", table, params=params,
            headers={"Accept": "application/vnd.pgrst.object+json"},
        )
        if response.status_code == 406:
            return None
        data = response.json()
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def select(
        self,
        table: str,
        eq: dict[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """读取满足条件的多行。"""
        params = {"select": columns, **self._filters(eq)}
        if limit is not None:
            params["limit"] = str(limit)
        response = await self._request("GET", table, params=params)
        data = response.json()
        return data if isinstance(data, list) else [data]

    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        """插入一行或多行，返回写入后的行。"""
        body = rows if isinstance(rows, list) else [rows]
        response = await self._request("POST", table, json=body)
        return response.json() if response.content else []

    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        合并写入（存在则更新，不存在则插入）。

        参数:
            on_conflict: 冲突判定列（如 "session_id,file_name"），对应表上的唯一约束
        """
        body = rows if isinstance(rows, list) else [rows]
        params = {"on_conflict": on_conflict} if on_conflict else None
        response = await self._request(
            "POST", table, params=params, json=body,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return response.json() if response.content else []

    async def delete(self, table: str, eq: dict[str, Any]) -> None:
        """删除满足条件的所有行。"""
        await self._request("DELETE", table, params=self._filters(eq))
        logger.debug(f"Deleted from {table} where {list(eq)}")

    async def close(self) -> None:
        """关闭底层 HTTP 连接池。"""
        await self._client.aclose()

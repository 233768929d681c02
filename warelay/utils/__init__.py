"""
工具函数模块 - 提供 warelay 项目全局通用的辅助函数。

本模块包含：
- helpers：路径、时间、JID 解析等小工具
- retry：统一的有限重试组合子与退避计算
"""

from warelay.utils.helpers import ensure_dir, get_data_path, timestamp
from warelay.utils.retry import RetryPolicy, RetryResult, backoff_delay, retry_async

__all__ = [
    "ensure_dir",
    "get_data_path",
    "timestamp",
    "RetryPolicy",
    "RetryResult",
    "backoff_delay",
    "retry_async",
]

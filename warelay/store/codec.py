"""
凭据序列化编解码 - JSON 与二进制字段的互转。

协议库的凭据中大量字段是原始字节（密钥对、签名等），JSON 无法直接表示。
约定的编码格式与桥接服务一致：

    b"\\x01\\x02"  ⇄  {"type": "Buffer", "data": "AQI="}

- dumps()：序列化（bytes → Buffer 对象）
- loads()：反序列化并"复活"Buffer 对象为 bytes
- salvage()：降级解析，只做结构解析，跳过复活步骤（用于主/备份都无法正常解码时）
"""

import base64
import json
from typing import Any

from warelay.errors import CorruptStateError


def _encode_default(value: Any) -> Any:
    """json.dumps 的 default 钩子：把 bytes 编码为 Buffer 对象。"""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _revive(obj: dict[str, Any]) -> Any:
    """json.loads 的 object_hook：把 Buffer 对象还原为 bytes。"""
    if obj.get("type") == "Buffer" and "data" in obj and len(obj) == 2:
        data = obj["data"]
        if isinstance(data, str):
            return base64.b64decode(data.encode("ascii"), validate=True)
        if isinstance(data, list):
            # 兼容 Node.js Buffer.toJSON() 的数组形式
            return bytes(data)
        raise ValueError("Buffer data must be base64 string or byte list")
    return obj


def dumps(value: Any) -> str:
    """序列化为 JSON 字符串（紧凑格式，二进制字段编码为 Buffer 对象）。"""
    return json.dumps(value, default=_encode_default, separators=(",", ":"))


def loads(raw: str) -> Any:
    """
    反序列化 JSON 字符串并复活 Buffer 字段。

    异常:
        CorruptStateError: 内容不是合法 JSON，或 Buffer 字段无法解码
    """
    try:
        return json.loads(raw, object_hook=_revive)
    except (TypeError, ValueError) as e:
        raise CorruptStateError(f"payload failed to decode: {e}") from e


def salvage(raw: str) -> Any:
    """
    降级解析：只做 JSON 结构解析，不复活 Buffer 字段。

    异常:
        CorruptStateError: 连结构解析都失败
    """
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CorruptStateError(f"payload is not valid JSON: {e}") from e

"""
工具函数集合 - warelay 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir, get_data_path
- 时间工具：timestamp
- 字符串工具：truncate_string, flat_file_name
- JID 工具：extract_plain_phone, is_personal_chat
- ID 工具：generate_media_id
- 数值工具：to_int
"""

import re
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """获取 warelay 数据目录（~/.warelay）。自动创建不存在的目录。"""
    return ensure_dir(Path.home() / ".warelay")


def timestamp() -> str:
    """获取当前 UTC 时间的 ISO 8601 格式字符串（写入远程存储的统一时间格式）。"""
    return datetime.now(timezone.utc).isoformat()


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """
    截断字符串到指定最大长度，超出时添加后缀。

    参数:
        s: 原始字符串
        max_len: 最大长度（包含后缀），默认 100
        suffix: 截断后缀，默认 "..."

    返回:
        截断后的字符串
    """
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def flat_file_name(key: str) -> str:
    """
    将逻辑键转换为远程存储中的扁平文件名。

    替换规则：'/' → '__'，':' → '-'，'.' → '_'
    例: "creds.json" → "creds_json"，"session-a:b/c.json" → "session-a-b__c_json"
    """
    return key.replace("/", "__").replace(":", "-").replace(".", "_")


def extract_plain_phone(jid: str | None) -> str | None:
    """
    从 JID 中提取纯数字手机号。

    例: "8613800000000@s.whatsapp.net" → "8613800000000"
    无法提取时返回 None。
    """
    if not jid or not isinstance(jid, str):
        return None
    return re.sub(r"[^0-9]", "", jid.split("@")[0]) or None


def is_personal_chat(jid: str | None) -> bool:
    """判断 JID 是否为一对一私聊（群聊以 @g.us 结尾）。"""
    return bool(jid) and jid.endswith("@s.whatsapp.net")


def generate_media_id() -> str:
    """生成媒体唯一 ID，格式为 MEDIA_<毫秒时间戳>_<16 位十六进制随机数>。"""
    return f"MEDIA_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def to_int(value: Any, default: int = 0) -> int:
    """
    把协议层的数值字段转为 int。

    messageTimestamp、fileLength 等字段可能是 int、数字字符串，
    或 protobuf Long 的 JSON 形式 {"low": ..., "high": ..., "unsigned": ...}。
    无法识别时返回 default。
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    if isinstance(value, dict) and isinstance(value.get("low"), int):
        high = value.get("high")
        high = high if isinstance(high, int) and not isinstance(high, bool) else 0
        return (high << 32) + (value["low"] & 0xFFFFFFFF)
    return default

"""
配置文件读写 (config/loader.py)

~/.warelay/config.json 使用 camelCase 键名，
Config 模型使用 snake_case。读取时先做旧格式迁移，再转换键名交给 Pydantic 校验；
文件损坏时记录警告并退回默认配置，保证 gateway 仍能启动。
"""

import json
import re
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from warelay.config.schema import Config
from warelay.utils.helpers import ensure_dir, get_data_path

CONFIG_FILE = "config.json"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """默认配置文件路径：~/.warelay/config.json"""
    return get_data_path() / CONFIG_FILE


def load_config(config_path: Path | None = None) -> Config:
    """
    读取配置文件。

    参数:
        config_path: 配置文件路径，为 None 时使用默认路径

    返回:
        Config；文件不存在或无法解析时返回默认配置
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("top-level value must be an object")
        return Config.model_validate(convert_keys(_migrate_config(raw)))
    except ValueError as e:
        # pydantic.ValidationError 与 JSONDecodeError 都是 ValueError 的子类
        logger.warning(f"Invalid config at {path}, using defaults: {e}")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """以 camelCase 键名写出配置（缩进 2 空格）。"""
    path = config_path or get_config_path()
    ensure_dir(path.parent)
    data = convert_keys(config.model_dump(), snake_to_camel)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    """
    旧版配置迁移：顶层 n8nWebhooks（逗号分隔字符串，沿用 N8N_WEBHOOKS 环境变量格式）
    移到 webhooks.urls。已显式配置 webhooks.urls 时保持不变。
    """
    legacy = data.pop("n8nWebhooks", None)
    if isinstance(legacy, str) and legacy:
        webhooks = data.setdefault("webhooks", {})
        webhooks.setdefault("urls", [u.strip() for u in legacy.split(",") if u.strip()])
    return data


def convert_keys(data: Any, convert: Callable[[str], str] | None = None) -> Any:
    """递归转换字典键名，默认 camelCase → snake_case。"""
    convert = convert or camel_to_snake
    if isinstance(data, dict):
        return {convert(k): convert_keys(v, convert) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item, convert) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """例: maxDelay → max_delay"""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    """例: max_delay → maxDelay"""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)

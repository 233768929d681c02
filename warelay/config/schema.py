"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 warelay 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── store       - 远程 KV 存储（PostgREST/Supabase）连接参数与会话 ID
├── bridge      - 协议桥接服务（WebSocket）地址与令牌
├── reconnect   - 重连退避参数与各类断线的重试上限
├── queue       - 出站发送队列节流参数
├── webhooks    - Webhook 转发目标与重试策略
├── archive     - 媒体归档（Telegram）配置
├── presence    - 在线状态保活
└── self_ping   - 自 ping 保活

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class StoreConfig(BaseModel):
    """远程 KV 存储配置。auth_data / connection_logs / messages 三张表都在这里。"""
    url: str = ""  # PostgREST 服务地址，如 https://xxx.supabase.co
    key: str = ""  # 服务密钥（同时用作 apikey 和 Bearer token）
    session_id: str = "default"  # 会话 ID，auth_data 表按它隔离多个账号
    timeout: float = 10.0  # 单次请求超时（秒）


class BridgeConfig(BaseModel):
    """协议桥接服务配置。桥接进程负责 WhatsApp Web 协议的帧与加密。"""
    url: str = "ws://localhost:3001"  # 桥接服务 WebSocket 地址
    token: str = ""  # 桥接认证令牌（可选但推荐设置）


class ReconnectConfig(BaseModel):
    """
    重连策略配置。

    退避公式: min(max_delay, base_delay * attempts) + uniform(0, jitter)
    """
    base_delay: float = 5.0  # 基础延迟（秒）
    max_delay: float = 30.0  # 延迟上限（秒，不含抖动）
    jitter: float = 1.0  # 抖动上限（秒）
    restart_delay: float = 1.0  # 配对完成后协议要求重启时的固定延迟（秒）
    max_session_retries: int = 5  # 会话被远端注销/本地会话被拒绝时的最大重试次数
    max_startup_retries: int = 10  # 启动阶段数据完整性错误的最大重试次数


class QueueConfig(BaseModel):
    """出站发送队列配置。"""
    pacing_delay: float = 0.5  # 两个任务之间的最小间隔（秒），避免触发下游限流
    max_file_size: int = 100 * 1024 * 1024  # 单个出站文件上限（字节）


class WebhookConfig(BaseModel):
    """Webhook 转发配置。每个端点独立重试，互不影响。"""
    urls: list[str] = Field(default_factory=list)  # 目标端点列表
    retries: int = 3  # 每个端点的最大尝试次数
    retry_delays: list[float] = Field(default_factory=lambda: [2.0, 5.0, 10.0])  # 失败后的等待表（秒）
    timeout: float = 30.0  # 单次 POST 超时（秒）
    user_agent: str = "WhatsApp-Bot/2.0-Enhanced"


class ArchiveConfig(BaseModel):
    """媒体归档配置。入站媒体会上传到指定 Telegram 会话保存。"""
    enabled: bool = False
    bot_token: str = ""  # 从 @BotFather 获取的 Bot Token
    chat_id: str = ""  # 归档目标会话 ID
    max_media_size: int = 50 * 1024 * 1024  # 超过此大小的媒体不下载（字节）


class PresenceConfig(BaseModel):
    """在线状态保活配置。连接期间定期发送 available。"""
    enabled: bool = True
    interval: float = 30.0  # 更新间隔（秒）


class SelfPingConfig(BaseModel):
    """自 ping 配置。定期请求健康检查地址，防止托管平台休眠。"""
    enabled: bool = False
    url: str = ""  # 健康检查地址，为空时不启动
    interval: float = 240.0  # 间隔（秒，默认 4 分钟）


class Config(BaseSettings):
    """
    warelay 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: WARELAY_
    - 嵌套分隔符: __ (双下划线)
    - 示例: WARELAY_STORE__SESSION_ID=shop 可覆盖 store.session_id
    """
    store: StoreConfig = Field(default_factory=StoreConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    self_ping: SelfPingConfig = Field(default_factory=SelfPingConfig)

    @property
    def store_configured(self) -> bool:
        """远程存储是否已配置（url 与 key 均非空）。"""
        return bool(self.store.url and self.store.key)

    # Pydantic Settings 配置：支持 WARELAY_ 前缀的环境变量，嵌套用 __ 分隔
    model_config = ConfigDict(
        env_prefix="WARELAY_",
        env_nested_delimiter="__"
    )

"""
warelay - WhatsApp 会话中继服务

模块概述：
    本文件是 warelay 包的入口文件（__init__.py），定义了包的元信息。
    warelay 负责在一条长期在线的 WhatsApp 会话与外部消费者之间转发消息：

    - 会话弹性层：连接状态机、断线分类、带抖动的退避重连
    - 持久化层：远程 KV 存储中的会话凭据（带备份、校验和自愈）
    - 投递层：串行出站发送队列 + 多 Webhook 有限重试转发
    - 辅助服务：在线状态保活、自 ping、媒体归档
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "📡"

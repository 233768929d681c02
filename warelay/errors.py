"""
错误分类定义 - warelay 中所有可预期故障的异常层次。

所有异常都继承自 RelayError，调用方可以按需捕获具体子类：

- TransientNetworkError：远程存储、会话传输或 Webhook 端点的 I/O 失败，
  由各自的重试策略在本地恢复，只以日志形式呈现
- CorruptStateError：凭据或记录无法通过结构校验，通过备份恢复或降级解析处理
- DegradedAuthError：凭据存在但缺少子字段，用新生成的材料补齐后回写
- FatalSessionError：有限重试预算已耗尽，需要外部显式清除会话
- DeliveryFailure：队列任务或 Webhook 投递失败，不影响其他任务/端点
"""


class RelayError(Exception):
    """warelay 异常基类。"""
    pass


class TransientNetworkError(RelayError):
    """远程服务暂时不可用（超时、连接失败、5xx 等）。"""
    pass


class CorruptStateError(RelayError):
    """持久化数据结构损坏或无法反序列化。"""
    pass


class DegradedAuthError(RelayError):
    """凭据不完整（缺少 noiseKey / signedIdentityKey / signedPreKey 等子字段）。"""
    pass


class FatalSessionError(RelayError):
    """
    会话进入 FATAL 状态。

    属性:
        reason: 导致终止的原因描述（供运维人员决定是否重置）
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeliveryFailure(RelayError):
    """出站发送或 Webhook 投递失败。"""
    pass

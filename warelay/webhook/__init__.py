"""Webhook 转发模块。"""

from warelay.webhook.dispatcher import DeliveryOutcome, WebhookDispatcher

__all__ = ["WebhookDispatcher", "DeliveryOutcome"]

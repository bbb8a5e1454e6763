"""
外部回调处理
"""
from .carrier import CarrierWebhookHandler

__all__ = ["CarrierWebhookHandler"]

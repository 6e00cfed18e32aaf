"""
Firebase Cloud Messaging integration
====================================

Public re-exports for the FCM push notification service.
"""

from .pushService import BatchSendResult, SendResult, send_to_multiple

__all__ = [
    "BatchSendResult",
    "SendResult",
    "send_to_multiple",
]

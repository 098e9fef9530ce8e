"""
Store and account services for Mail Sweep.
"""

from .accounts import connect_account, disconnect_account, setup_push_notifications
from .messages import create_message, delete_message, request_unsubscribe, update_message

__all__ = [
    "connect_account",
    "disconnect_account",
    "setup_push_notifications",
    "create_message",
    "delete_message",
    "request_unsubscribe",
    "update_message",
]

"""
Mailbox provider adapters
"""
from .base import (
    CursorExpiredError,
    EmailProvider,
    HistoryChange,
    NotFoundError,
    ParsedMessage,
    ProviderError,
    TransientProviderError,
)
from .factory import create_provider

__all__ = [
    'EmailProvider',
    'ParsedMessage',
    'HistoryChange',
    'ProviderError',
    'NotFoundError',
    'TransientProviderError',
    'CursorExpiredError',
    'create_provider',
]

"""
Provider construction for a connected account
"""
from typing import Optional

from src.config import Settings, get_settings
from src.database.models import EmailAccount

from .auth import get_gmail_service
from .base import EmailProvider
from .gmail import GmailProvider
from .outlook import OutlookProvider


def create_provider(account: EmailAccount, settings: Optional[Settings] = None) -> EmailProvider:
    """Build the mailbox adapter matching the account's provider"""
    settings = settings or get_settings()
    if account.provider == 'google':
        return GmailProvider(get_gmail_service(account, settings), account.email)
    if account.provider == 'microsoft':
        return OutlookProvider(account.access_token or '', account.email,
                               timeout=settings.webhook_timeout_seconds * 3)
    raise ValueError(f"Unsupported provider: {account.provider}")

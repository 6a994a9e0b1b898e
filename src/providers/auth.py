"""
Credential helpers for the mailbox providers
"""
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build

from src.config import Settings
from src.database.models import EmailAccount

from .base import ProviderError

# Read, label and draft; deletion is limited to drafts
SCOPES = [
    'https://www.googleapis.com/auth/gmail.modify',
    'https://www.googleapis.com/auth/gmail.labels',
]


def get_gmail_credentials(account: EmailAccount, settings: Settings) -> Credentials:
    """Build OAuth credentials from the tokens stored on the account"""
    if not account.refresh_token:
        raise ProviderError(f"Account {account.email} has no refresh token")
    return Credentials(
        token=account.access_token,
        refresh_token=account.refresh_token,
        token_uri=settings.gmail_token_uri,
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
        scopes=SCOPES,
    )


def get_gmail_service(account: EmailAccount, settings: Settings) -> Resource:
    """Get an authorized Gmail API service instance for an account"""
    try:
        creds = get_gmail_credentials(account, settings)
        return build('gmail', 'v1', credentials=creds, cache_discovery=False)
    except RefreshError as e:
        raise ProviderError(f"Invalid grant for {account.email}: {e}") from e

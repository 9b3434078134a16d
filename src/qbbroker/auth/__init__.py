"""
qbbroker authentication and token management.

Provides the OAuth2 callback listener, the per-environment credential store,
and the token manager that refreshes and persists QuickBooks tokens.
"""

from qbbroker.auth.listener import CallbackResult, ListenerState, OAuthCallbackListener
from qbbroker.auth.manager import TokenManager
from qbbroker.auth.store import CompanyInfo, CredentialRecord, CredentialStore

__all__ = [
    "CallbackResult",
    "CompanyInfo",
    "CredentialRecord",
    "CredentialStore",
    "ListenerState",
    "OAuthCallbackListener",
    "TokenManager",
]

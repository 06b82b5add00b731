"""
DocVault Stores — Transaction-scoped data access.

Stores hold no session of their own; every method receives the caller's
SQLAlchemy Session so transaction boundaries stay visible in the services.
"""

from docvault.stores.credentials import CredentialStore
from docvault.stores.documents import DocumentStore
from docvault.stores.grants import GrantStore
from docvault.stores.users import UserStore

__all__ = [
    "CredentialStore",
    "DocumentStore",
    "GrantStore",
    "UserStore",
]

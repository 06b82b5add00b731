"""DocVault Users — registration and account management."""

from docvault.users.models import UserPage, UserView
from docvault.users.service import UserService

__all__ = ["UserPage", "UserView", "UserService"]

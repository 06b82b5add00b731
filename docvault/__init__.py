"""
DocVault — Document storage with refresh-token sessions and per-user grants.

Packages:
    docvault.engine        config, errors, logging, tokens, sessions, cache
    docvault.db            SQLAlchemy base, models, transactions
    docvault.stores        transaction-scoped data access
    docvault.documents     access resolution, object storage
    docvault.users         registration and account management
    docvault.integrations  outbound webhook
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "stores", "documents", "users", "integrations"]

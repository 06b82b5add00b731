"""DocVault Integrations — outbound calls to external systems."""

from docvault.integrations.webhook import WebhookNotifier

__all__ = ["WebhookNotifier"]

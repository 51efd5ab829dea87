"""coding-bot: turns ticket-tracker agent-session webhooks into isolated coding sessions."""

__version__ = "0.1.0"

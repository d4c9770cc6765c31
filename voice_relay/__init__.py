"""Voice call session orchestration over Twilio ConversationRelay."""

__version__ = "0.1.0"

"""WhatsApp Cloud API to chat-completion relay."""

__version__ = "1.0.0"

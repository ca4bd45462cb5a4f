"""
wabot: a single-tenant WhatsApp chat-bot with database-backed session persistence.
"""

__version__ = "0.1.0"

"""
WhatsApp session persistence for wabot.

- snapshot: SessionSnapshot model and auth-directory encoding helpers
- synchronizer: restore / snapshot / reset between the auth directory and the store
"""

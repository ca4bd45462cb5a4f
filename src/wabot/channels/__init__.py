"""
Chat client drivers for wabot.

- base: ChatClient interface and the ChatEvent types
- whatsapp: neonize-backed WhatsApp driver (optional `whatsapp` extra)
"""

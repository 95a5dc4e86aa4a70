"""Outbound clients: Twilio WhatsApp delivery and the in-process OpenAI fake."""

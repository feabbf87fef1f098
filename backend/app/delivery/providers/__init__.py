"""Provider adapters — Twilio, JSON gateway, SMTP and simulation."""

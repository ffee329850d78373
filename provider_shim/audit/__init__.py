"""Request logging and body redaction."""

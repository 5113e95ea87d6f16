"""Inbound channel adapters (e-mail, SMS/MMS)."""

"""Core infrastructure: settings, logging and exceptions."""

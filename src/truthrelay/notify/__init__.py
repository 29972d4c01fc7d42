"""Notification sinks."""

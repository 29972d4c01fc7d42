"""Durable watermark storage."""

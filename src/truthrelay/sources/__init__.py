"""Upstream post sources."""

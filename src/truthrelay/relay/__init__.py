"""Fetch, sequence and dispatch cycle."""

"""Observability helpers for select sessions."""

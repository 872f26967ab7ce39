"""Relational access for the fallback store."""

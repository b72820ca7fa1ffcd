"""Teller services."""

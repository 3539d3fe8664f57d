"""Relay services package."""

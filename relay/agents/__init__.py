"""Relay agents package."""

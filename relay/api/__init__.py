"""Relay HTTP API."""

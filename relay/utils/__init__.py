# relay/utils/__init__.py
"""
Relay - Utilities Package

Common utilities and helpers used across the Relay pipeline.
"""

from .email_parser import ForwardedThreadParser, parse_forwarded_email

__all__ = ['ForwardedThreadParser', 'parse_forwarded_email']

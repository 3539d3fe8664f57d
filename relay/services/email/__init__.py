"""Email Services Module"""
from .intake import InboundEmailService, compute_signature, verify_mailgun_signature

__all__ = ["InboundEmailService", "compute_signature", "verify_mailgun_signature"]

"""Notification Services Module"""
from .sms import SMS_MAX_CHARS, TwilioSMSClient, build_review_sms, normalize_phone, twiml_response

__all__ = ["SMS_MAX_CHARS", "TwilioSMSClient", "build_review_sms", "normalize_phone", "twiml_response"]

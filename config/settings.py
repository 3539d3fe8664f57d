"""
Relay Configuration Settings

This module contains all configuration settings for the Relay application.
Settings can be overridden by environment variables (a local .env file is
loaded first). Services read these values as ``settings.NAME`` at call time,
so tests can override a single value with monkeypatch.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
MIGRATIONS_DIR = BASE_DIR / "supabase" / "migrations"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Supabase Configuration
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

# Inbound email (Mailgun routes)
MAILGUN_WEBHOOK_SIGNING_KEY = os.getenv("MAILGUN_WEBHOOK_SIGNING_KEY")
REQUIRE_WEBHOOK_SIGNATURE = _flag("REQUIRE_WEBHOOK_SIGNATURE", "true")
WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS = 300

# SMS (Twilio)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")
SMS_TIMEOUT_SECONDS = 15
USER_PHONE_NUMBER = os.getenv("USER_PHONE_NUMBER")

# Operator mailbox that forwards threads into the system
RELAY_EMAIL_ADDRESS = os.getenv("RELAY_EMAIL_ADDRESS")

# Model Configuration
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.1"))

# Routing rules
AUTO_ASSIGN_THRESHOLD = 0.85
OPTION_MIN_CONFIDENCE = 0.5
MAX_REVIEW_OPTIONS = 3
MERGE_STATE_ON_ASSIGN = _flag("MERGE_STATE_ON_ASSIGN", "true")

# Classification context bounds
CONTEXT_MAX_ENGAGEMENTS = 50
CONTEXT_MAX_EVENTS = 50
CONTEXT_MAX_PROGRAMS = 50
CONTEXT_SYNOPSIS_CHARS = 400

# Ingestion
DUPLICATE_BODY_PREFIX_CHARS = 100
BATCH_GROUP_WINDOW_SECONDS = 5

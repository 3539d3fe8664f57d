"""
Relay - forwarded email threads to tracked partner engagements.

Ingests forwarded threads, classifies them against tracked engagements with an
LLM, and routes each delivery to automatic assignment or an SMS-driven review.
"""

__version__ = "0.1.0"

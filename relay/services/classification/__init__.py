"""Classification Services Module"""
from .classifier import (
    ClassificationContext,
    EngagementClassifier,
    build_user_message,
    parse_classification_response,
)

__all__ = ["ClassificationContext", "EngagementClassifier", "build_user_message", "parse_classification_response"]

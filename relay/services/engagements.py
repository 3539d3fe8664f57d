# --------------------------- relay/services/engagements.py ----------------------------
"""Engagement writes shared by the router (auto path) and the review state machine."""

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from relay.models import ClassificationResult

logger = logging.getLogger(__name__)


def merge_open_items(existing: List[Dict[str, Any]], incoming) -> List[Dict[str, Any]]:
    """Append new open items, skipping descriptions already present (case-insensitive)."""
    merged = list(existing or [])
    seen = {str(item.get("description", "")).strip().lower() for item in merged}
    for item in incoming:
        key = item.description.strip().lower()
        if not key or key in seen:
            continue
        merged.append(asdict(item))
        seen.add(key)
    return merged


def create_engagement_from_result(store, result: ClassificationResult, name: Optional[str] = None,
                                  engagement_id: Optional[str] = None) -> Dict[str, Any]:
    """Create an active engagement seeded with the classification's state and open items."""
    match = result.engagement_match
    record = {
        "name": (name or match.name or "").strip() or "Untitled",
        "partner_name": match.partner_name,
        "current_state": result.current_state,
        "summary": result.current_state,
        "open_items": merge_open_items([], result.open_items),
    }
    if engagement_id:
        record["id"] = engagement_id
    engagement = store.create_engagement(record)
    logger.info(f"Created engagement '{engagement['name']}' ({engagement['id']})")
    return engagement


def merge_result_into_engagement(store, engagement: Dict[str, Any], result: ClassificationResult) -> bool:
    """
    Fold the classification's current state and open items into an engagement.

    Closed engagements are left untouched. partner_name is only filled when
    the engagement has none.

    RETURNS:
        bool: True when an update was written
    """
    if engagement.get("status") == "closed":
        logger.info(f"Engagement {engagement['id']} is closed; not merging classification")
        return False

    fields: Dict[str, Any] = {}
    if result.engagement_match.partner_name and not engagement.get("partner_name"):
        fields["partner_name"] = result.engagement_match.partner_name
    if result.current_state:
        fields["current_state"] = result.current_state
        fields["summary"] = result.current_state
    open_items = merge_open_items(engagement.get("open_items") or [], result.open_items)
    if len(open_items) != len(engagement.get("open_items") or []):
        fields["open_items"] = open_items
    if not fields:
        return False
    store.update_engagement(engagement["id"], fields)
    return True

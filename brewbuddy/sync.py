"""
Full-set sync of a user's coffee collection.

A bulk save is the complete, authoritative set for the user: every
submitted coffee is upserted under its stable uid, then every stored coffee
missing from the submission is deleted, all in one transaction. Upserting
before deleting means a failure can never leave the collection empty.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from brewbuddy.db import VALID_METHODS, CoffeeRecord, DbClient, transaction
from brewbuddy.errors import BadRequestError, NotFoundError
from brewbuddy.sanitize import (
    normalize_feedback,
    normalize_feedback_history,
    sanitize_coffee_data,
    stable_coffee_uid,
    strip_html,
    to_iso_timestamp,
    truncate_string,
)

logger = logging.getLogger(__name__)

# Editable fields of a single brew and the document key each one maps to.
EDITABLE_FIELDS = {
    "coffee_name": "name",
    "origin": "origin",
    "roastery": "roastery",
}
EDIT_MAX_LENGTH = 200


def _method_tag(coffee: dict) -> Optional[str]:
    method = coffee.get("method")
    return method if method in VALID_METHODS else None


def _prepare(coffee: dict) -> dict:
    prepared = dict(coffee)
    if "feedback" in prepared:
        prepared["feedback"] = normalize_feedback(prepared["feedback"])
    if "feedbackHistory" in prepared:
        prepared["feedbackHistory"] = normalize_feedback_history(
            prepared["feedbackHistory"]
        )
    return prepared


def save_coffees(db: DbClient, user_id: int, coffees: Any) -> int:
    """Replace the user's collection with ``coffees``; return how many were sent."""
    if not isinstance(coffees, list):
        raise BadRequestError("Coffees must be an array")
    if any(not isinstance(coffee, dict) for coffee in coffees):
        raise BadRequestError("Each coffee must be an object")

    with transaction(db):
        keep_uids = []
        for coffee in coffees:
            prepared = _prepare(coffee)
            uid = stable_coffee_uid(prepared)
            keep_uids.append(uid)
            sanitized = sanitize_coffee_data(prepared)
            db.save_coffee(user_id, uid, sanitized, method=_method_tag(sanitized))
        removed = db.replace_user_coffees(user_id, keep_uids)

    logger.info(
        "Synced %d coffees for user %s (%d removed)", len(coffees), user_id, removed
    )
    return len(coffees)


def coffee_view(record: CoffeeRecord) -> dict:
    """The document as clients see it: stable id first, savedAt last."""
    view = {"id": record.coffee_uid}
    view.update(record.document())
    view["id"] = record.coffee_uid
    view["savedAt"] = to_iso_timestamp(record.created_at)
    return view


def get_coffees(db: DbClient, user_id: int) -> list[dict]:
    return [coffee_view(record) for record in db.get_user_coffees(user_id)]


def _find_coffee(records: list[CoffeeRecord], coffee_id: str) -> Optional[CoffeeRecord]:
    for record in records:
        if record.coffee_uid == coffee_id:
            return record
    for record in records:
        saved_at = record.document().get("savedAt")
        if saved_at is not None and str(saved_at) == coffee_id:
            return record
    return None


def update_coffee(db: DbClient, user_id: int, coffee_id: str, changes: Any) -> dict:
    """Apply an inline edit of name, origin or roastery to one stored coffee."""
    changes = changes if isinstance(changes, dict) else {}
    updates = {}
    for field, key in EDITABLE_FIELDS.items():
        value = changes.get(field)
        if value is not None:
            cleaned = strip_html(str(value).strip())
            updates[key] = truncate_string(cleaned, EDIT_MAX_LENGTH)
    if not updates:
        raise BadRequestError("No valid fields to update")

    with transaction(db):
        record = _find_coffee(db.get_user_coffees(user_id), coffee_id)
        if record is None:
            raise NotFoundError("Coffee not found")
        document = record.document()
        document.update(updates)
        db.save_coffee(user_id, record.coffee_uid, document, method=record.method)
        updated = next(
            r for r in db.get_user_coffees(user_id) if r.coffee_uid == record.coffee_uid
        )

    logger.info(
        "Updated coffee %s for user %s: %s", coffee_id, user_id, ", ".join(updates)
    )
    return coffee_view(updated)

"""
Loading of per-user scheduling configuration.
"""
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
import structlog

from ..database.models import Calendar, ProtectedSlot, SchedulingRule, User
from ..schemas.scheduling import ProtectedSlotSpec, SchedulingPreferences, SchedulingRuleSpec
from .scheduling.protected import protected_from_model, resolve_protected_slots
from .scheduling.rules import rule_from_model

logger = structlog.get_logger(__name__)


def load_preferences(user: Optional[User]) -> SchedulingPreferences:
    """Stored preferences merged over the defaults; invalid documents fall back to defaults."""
    if user is None:
        return SchedulingPreferences()

    stored = dict(user.scheduling_preferences or {})
    stored.setdefault("timezone", user.timezone or "UTC")
    try:
        return SchedulingPreferences(**stored)
    except PydanticValidationError as e:
        logger.warning("Invalid scheduling preferences, using defaults", user_id=str(user.id), error=str(e))
        return SchedulingPreferences(timezone=user.timezone or "UTC")


def load_rules(db: Session, user_id: str) -> List[SchedulingRuleSpec]:
    rows = db.query(SchedulingRule).filter(SchedulingRule.user_id == user_id).all()
    return [rule_from_model(row) for row in rows]


def load_protected_slots(db: Session, user_id: str, preferences: SchedulingPreferences) -> List[ProtectedSlotSpec]:
    rows = db.query(ProtectedSlot).filter(ProtectedSlot.user_id == user_id).all()
    return resolve_protected_slots(preferences, [protected_from_model(row) for row in rows])


def get_enabled_calendar_ids(db: Session, user_id: str) -> List[str]:
    """Provider ids of the user's enabled calendars, ``primary`` when none are connected."""
    rows = db.query(Calendar).filter(
        Calendar.user_id == user_id,
        Calendar.enabled.is_(True)
    ).all()
    calendar_ids = [row.google_calendar_id for row in rows]
    return calendar_ids or ["primary"]

"""Per-user notification preferences and the channel/threshold filter."""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from finjobs.common.models import NotificationPreference
from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.metrics_service import MetricsService

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
LANGUAGES = ("en", "es", "fr", "de", "pt", "zh", "ja")

DEFAULT_PREFERENCES: dict[str, dict[str, Any]] = {
    "transaction_alerts": {"push": True, "email": True, "sms": False, "threshold": 0},
    "budget_alerts": {
        "push": True,
        "email": True,
        "sms": False,
        "warning_threshold": 80,
        "critical_threshold": 95,
    },
    "investment_updates": {
        "push": True,
        "email": True,
        "sms": False,
        "frequency": "daily",
        "price_change_threshold": 5,
    },
    "security_alerts": {"push": True, "email": True, "sms": True},
    "market_news": {"push": False, "email": True, "sms": False, "categories": []},
    "payment_reminders": {"push": True, "email": True, "sms": False, "days_before": 3},
    "goal_milestones": {"push": True, "email": True, "sms": False},
    "system_notifications": {"push": True, "email": True, "sms": False},
}

TYPE_TO_SECTION = {
    "transaction_alert": "transaction_alerts",
    "budget_alert": "budget_alerts",
    "investment_update": "investment_updates",
    "security_alert": "security_alerts",
    "market_news": "market_news",
    "payment_reminder": "payment_reminders",
    "goal_milestone": "goal_milestones",
    "system_notification": "system_notifications",
}

# (preference key, payload keys that may carry the measured value)
THRESHOLD_RULES: dict[str, tuple[str, tuple[str, ...]]] = {
    "transaction_alerts": ("threshold", ("amount",)),
    "budget_alerts": ("warning_threshold", ("percentage", "budget_percentage", "percent_used")),
    "investment_updates": (
        "price_change_threshold",
        ("price_change_percent", "change_percent", "price_change"),
    ),
}


def default_preferences() -> dict[str, dict[str, Any]]:
    return copy.deepcopy(DEFAULT_PREFERENCES)


def deep_merge(base: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` updated with ``changes``, merging nested dicts key by key."""
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _measured_value(data: dict[str, Any], keys: tuple[str, ...]) -> Optional[float]:
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        try:
            return abs(float(value))
        except (TypeError, ValueError):
            return None
    return None


class PreferenceService:
    """Service for notification preference operations."""

    @staticmethod
    def get_or_create(db: Session, user_id: str) -> NotificationPreference:
        """Load a user's preferences, creating the defaults on first access."""
        pref = db.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if pref is not None:
            return pref

        pref = NotificationPreference(
            user_id=user_id,
            preferences=default_preferences(),
            language=DEFAULT_LANGUAGE,
        )
        db.add(pref)
        try:
            db.commit()
        except IntegrityError:
            # Created concurrently by another worker
            db.rollback()
            return db.execute(
                select(NotificationPreference).where(
                    NotificationPreference.user_id == user_id
                )
            ).scalar_one()
        db.refresh(pref)
        logger.info(f"Created default notification preferences for user {user_id}")
        return pref

    @staticmethod
    def update(
        db: Session,
        user_id: str,
        changes: dict[str, Any],
        language: Optional[str] = None,
    ) -> NotificationPreference:
        """Deep-merge ``changes`` into the stored preferences (last writer wins)."""
        pref = PreferenceService.get_or_create(db, user_id)
        pref.preferences = deep_merge(pref.preferences or {}, changes)
        if language:
            pref.language = language
        db.commit()
        db.refresh(pref)
        MetricsService.emit_notification_metric(
            BusinessMetric.PREFERENCES_UPDATED, sections=",".join(sorted(changes))
        )
        return pref

    @staticmethod
    def section_for(notification_type: str) -> str:
        return TYPE_TO_SECTION.get(notification_type, notification_type)

    @staticmethod
    def is_channel_enabled(
        preferences: dict[str, Any], notification_type: str, channel: str
    ) -> bool:
        """Whether ``channel`` is enabled for ``notification_type``.

        Sections without an explicit setting for the channel allow it.
        """
        section = preferences.get(PreferenceService.section_for(notification_type))
        if not isinstance(section, dict):
            return True
        return section.get(channel, True) is not False

    @staticmethod
    def passes_thresholds(
        preferences: dict[str, Any], notification_type: str, data: dict[str, Any]
    ) -> bool:
        """Whether the notification's measured value reaches the user's threshold.

        Notifications that carry no measured value always pass.
        """
        section_name = PreferenceService.section_for(notification_type)
        rule = THRESHOLD_RULES.get(section_name)
        section = preferences.get(section_name)
        if rule is None or not isinstance(section, dict):
            return True
        pref_key, data_keys = rule
        threshold = section.get(pref_key)
        value = _measured_value(data or {}, data_keys)
        if threshold is None or value is None:
            return True
        return value >= float(threshold)

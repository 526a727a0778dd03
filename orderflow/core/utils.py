"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from orderflow.core.config import settings


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def business_date_string(moment: Optional[datetime] = None) -> str:
    """YYYY-MM-DD of ``moment`` in the business timezone (defaults to now)."""
    moment = ensure_utc(moment) or utcnow()
    return moment.astimezone(ZoneInfo(settings.BUSINESS_TIMEZONE)).strftime("%Y-%m-%d")


def business_local_time(moment: Optional[datetime] = None) -> datetime:
    moment = ensure_utc(moment) or utcnow()
    return moment.astimezone(ZoneInfo(settings.BUSINESS_TIMEZONE))


def format_amount(amount_minor: Optional[int]) -> str:
    """Render an amount in the smallest currency unit for humans (12050 -> '120.50')."""
    if amount_minor is None:
        return "0.00"
    return f"{Decimal(amount_minor) / Decimal(100):.2f}"

# /apiforge/models/types.py
from datetime import datetime, timezone

from sqlalchemy import DateTime, Text
from sqlalchemy.dialects.mysql import DATETIME, LONGTEXT

# mysql gets the wide/precise variants, everything else the generic type
LongText = Text().with_variant(LONGTEXT(), "mysql")
Timestamp = DateTime().with_variant(DATETIME(fsp=3), "mysql")


def utcnow() -> datetime:
    """Naive UTC, the way every timestamp column stores it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

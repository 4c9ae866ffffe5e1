"""Persistent counters of network tile requests, one row per tile style."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Dict, List

from sqlmodel import select

from ..database import init_db, session_scope
from ..models import ApiUsageStat

PROVIDER_PREFIX = "bing_aerial"

_usage_initialized = False


def tile_provider_key(*, labeled: bool) -> str:
    return f"{PROVIDER_PREFIX}_{'labeled' if labeled else 'unlabeled'}"


def _ensure_usage_table() -> None:
    global _usage_initialized
    if not _usage_initialized:
        init_db()
        _usage_initialized = True


def record_api_usage(provider: str, *, increment: int = 1) -> None:
    """Add ``increment`` network requests to the counter for ``provider``."""

    if increment <= 0:
        return

    _ensure_usage_table()

    with session_scope() as session:
        statement = select(ApiUsageStat).where(ApiUsageStat.provider == provider)
        usage = session.exec(statement).one_or_none()
        now = datetime.now(UTC)
        if usage is None:
            session.add(ApiUsageStat(provider=provider, request_count=increment, last_used_at=now))
        else:
            usage.request_count += increment
            usage.last_used_at = now
        session.commit()


def list_api_usage() -> List[Dict[str, object]]:
    _ensure_usage_table()

    with session_scope() as session:
        stats = session.exec(select(ApiUsageStat).order_by(ApiUsageStat.provider)).all()
        return [
            {
                "provider": stat.provider,
                "request_count": stat.request_count,
                "last_used_at": stat.last_used_at.isoformat() if stat.last_used_at else None,
            }
            for stat in stats
        ]

"""Relative "last worked on" labels for worktree listings."""

from datetime import datetime

from grove.models import parse_timestamp, utc_now


def _age_seconds(last_accessed_at: str, now: datetime | None) -> float:
    return ((now or utc_now()) - parse_timestamp(last_accessed_at)).total_seconds()


def freshness_label(last_accessed_at: str, now: datetime | None = None) -> str:
    seconds = _age_seconds(last_accessed_at, now)
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


def freshness_level(last_accessed_at: str, now: datetime | None = None) -> str:
    """`recent` under 3 days, `stale` under 14, otherwise `very-stale`."""
    days = int(_age_seconds(last_accessed_at, now) // 86400)
    if days < 3:
        return "recent"
    if days < 14:
        return "stale"
    return "very-stale"

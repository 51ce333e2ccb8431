from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from icalendar import Calendar as ICalendar

from feedmirror.identity import annotate_identity
from feedmirror.models import FeedConfig, MatchingConfig, SourceEvent, SyncConfig, date_to_datetime

logger = logging.getLogger(__name__)


class FeedLoadError(RuntimeError):
    """The feed could not be fetched or is not a calendar. Never the same as an empty feed."""


@dataclass
class FeedSnapshot:
    events: list[SourceEvent] = field(default_factory=list)
    dropped: int = 0
    raw_count: int = 0


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def _coerce_datetime(value: Any, default_tz: tzinfo) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value, tzinfo=default_tz)
    return None


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    try:
        return component.decoded(name)
    except (ValueError, TypeError) as exc:
        logger.warning("Unreadable %s in feed event: %s", name, exc)
        return None


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def parse_feed(
    raw_ical: str | bytes,
    *,
    default_tz: tzinfo | None = None,
    identity_prefix: str = "feed-stable-",
    identity_scheme: str = "rolling32",
) -> FeedSnapshot:
    default_tz = default_tz or ZoneInfo("UTC")
    text = raw_ical.decode("utf-8", errors="replace") if isinstance(raw_ical, bytes) else str(raw_ical or "")
    if "BEGIN:VCALENDAR" not in text.upper():
        raise FeedLoadError("Feed body is not an iCalendar document.")
    try:
        calendar_obj = ICalendar.from_ical(text)
    except ValueError as exc:
        raise FeedLoadError(f"Feed body could not be parsed: {exc}") from exc

    snapshot = FeedSnapshot()
    for component in calendar_obj.walk("VEVENT"):
        snapshot.raw_count += 1
        event = SourceEvent(
            title=_text(component, "SUMMARY"),
            start=_coerce_datetime(_decoded(component, "DTSTART"), default_tz),
            end=_coerce_datetime(_decoded(component, "DTEND"), default_tz),
            location=_text(component, "LOCATION"),
            description=_text(component, "DESCRIPTION"),
            original_uid=_text(component, "UID"),
        )
        if not event.is_complete:
            snapshot.dropped += 1
            logger.warning(
                "Dropping feed event without title or start (uid=%r, title=%r)",
                event.original_uid,
                event.title,
            )
            continue
        if event.end is not None and event.end < event.start:
            event = replace(event, end=None)
        snapshot.events.append(annotate_identity(event, prefix=identity_prefix, scheme=identity_scheme))
    return snapshot


class FeedClient:
    def __init__(
        self,
        config: FeedConfig,
        sync_config: SyncConfig | None = None,
        matching_config: MatchingConfig | None = None,
    ) -> None:
        self.config = config
        self.sync_config = sync_config or SyncConfig()
        self.matching_config = matching_config or MatchingConfig()

    def is_configured(self) -> bool:
        return bool(self.config.url)

    def fetch_raw(self) -> bytes:
        if not self.is_configured():
            raise FeedLoadError("Feed URL is not configured.")
        try:
            response = requests.get(
                self.config.url,
                headers={"User-Agent": self.config.user_agent, "Accept": "text/calendar, */*"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FeedLoadError(f"Feed request failed: {type(exc).__name__}: {exc}") from exc
        return response.content

    def load(self) -> FeedSnapshot:
        snapshot = parse_feed(
            self.fetch_raw(),
            default_tz=resolve_timezone(self.sync_config.timezone),
            identity_prefix=self.matching_config.identity_prefix,
            identity_scheme=self.matching_config.identity_scheme,
        )
        logger.info(
            "Loaded %d feed events (%d dropped) from %s",
            len(snapshot.events),
            snapshot.dropped,
            self.config.url,
        )
        return snapshot

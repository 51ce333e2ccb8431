from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import date, datetime, timezone
from typing import Any

import caldav
from caldav.lib.error import NotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from feedmirror.models import CalDAVConfig, CalendarInfo, TargetEvent, date_to_datetime

logger = logging.getLogger(__name__)

PRODID = "-//feedmirror//Calendar Mirror//EN"


class TargetCalendarError(RuntimeError):
    """The CalDAV server or the target calendar cannot be used."""


def normalize_calendar_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def _same_calendar_id(left: str, right: str) -> bool:
    return str(left or "").strip().rstrip("/") == str(right or "").strip().rstrip("/")


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return date_to_datetime(value, tzinfo=timezone.utc)
    return None


def parse_target_resource(raw_data: Any, href: str = "") -> TargetEvent | None:
    """Read the first VEVENT of a stored resource. Raises ValueError on unparseable bodies."""
    raw_ical = raw_data.decode("utf-8", errors="replace") if isinstance(raw_data, bytes) else str(raw_data)
    vevent = next(iter(ICalendar.from_ical(raw_ical).walk("VEVENT")), None)
    if vevent is None:
        return None

    def decoded(name: str) -> Any:
        return vevent.decoded(name) if vevent.get(name) is not None else None

    return TargetEvent(
        title=str(vevent.get("SUMMARY", "")).strip(),
        start=_as_datetime(decoded("DTSTART")),
        end=_as_datetime(decoded("DTEND")),
        location=str(vevent.get("LOCATION", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        external_ref=href,
        uid=str(vevent.get("UID", "")).strip(),
        etag=hashlib.sha1(raw_ical.encode("utf-8")).hexdigest(),  # nosec B324
    )


def build_ical(event: TargetEvent, uid: str) -> str:
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    vevent.add("SUMMARY", event.title or "")
    vevent.add("DESCRIPTION", event.description or "")
    optional = (("LOCATION", event.location), ("DTSTART", event.start), ("DTEND", event.end))
    for name, value in optional:
        if value:
            vevent.add(name, value)
    document = ICalendar()
    document.add("PRODID", PRODID)
    document.add("VERSION", "2.0")
    document.add_component(vevent)
    return document.to_ical().decode("utf-8")


class CalDAVService:
    """The mirror's view of one CalDAV account: find or create the target calendar and edit its events."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._principal: Any = None
        self._calendars: dict[str, Any] = {}

    @property
    def principal(self) -> Any:
        if self._principal is None:
            if not self.config.base_url or not self.config.username:
                raise TargetCalendarError("CalDAV config is incomplete.")
            client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = client.principal()
        return self._principal

    def list_calendars(self) -> list[CalendarInfo]:
        self._calendars = {str(calendar.url): calendar for calendar in self.principal.calendars()}
        return [
            CalendarInfo(calendar_id=url, name=getattr(calendar, "name", "") or url, url=url)
            for url, calendar in self._calendars.items()
        ]

    def _calendar(self, calendar_id: str) -> Any:
        if calendar_id not in self._calendars:
            self.list_calendars()
        try:
            return self._calendars[calendar_id]
        except KeyError:
            raise TargetCalendarError(f"Calendar not found: {calendar_id}") from None

    def ensure_calendar(self, calendar_id: str, calendar_name: str) -> CalendarInfo:
        """Find the target calendar by id, then by normalized name, else create it."""
        known = self.list_calendars()
        if calendar_id:
            by_id = [info for info in known if _same_calendar_id(info.calendar_id, calendar_id)]
            if by_id:
                return by_id[0]
            logger.warning("Configured calendar %s not found, looking up %r by name", calendar_id, calendar_name)
        wanted = normalize_calendar_name(calendar_name)
        by_name = sorted(
            (info for info in known if wanted and normalize_calendar_name(info.name) == wanted),
            key=lambda info: info.calendar_id,
        )
        if by_name:
            return by_name[0]

        logger.info("Creating target calendar %r", calendar_name)
        created = self.principal.make_calendar(name=calendar_name)
        url = str(created.url)
        self._calendars[url] = created
        return CalendarInfo(calendar_id=url, name=getattr(created, "name", "") or calendar_name, url=url)

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[TargetEvent]:
        events: list[TargetEvent] = []
        for resource in self._calendar(calendar_id).search(start=start, end=end, event=True, expand=False):
            href = str(getattr(resource, "url", "") or "")
            try:
                event = parse_target_resource(resource.data, href=href)
            except ValueError as exc:
                logger.warning("Skipping unreadable calendar resource %s: %s", href, exc)
                continue
            if event is not None and event.uid:
                events.append(event)
        return events

    def _find_resource(self, calendar: Any, uid: str = "", href: str = "") -> Any:
        lookups = ((calendar.event_by_url, href), (calendar.event_by_uid, uid))
        for lookup, key in lookups:
            if not key:
                continue
            try:
                return lookup(key)
            except NotFoundError:
                logger.debug("No calendar resource found for %s", key)
        return None

    def create_event(self, calendar_id: str, desired: TargetEvent) -> TargetEvent:
        uid = desired.uid or f"{uuid.uuid4()}@feedmirror"
        raw_ical = build_ical(desired, uid)
        resource = self._calendar(calendar_id).save_event(raw_ical)
        return parse_target_resource(raw_ical, href=str(getattr(resource, "url", "") or "")) or desired

    def update_event(self, calendar_id: str, existing: TargetEvent, desired: TargetEvent) -> TargetEvent:
        resource = self._find_resource(self._calendar(calendar_id), uid=existing.uid, href=existing.external_ref)
        if resource is None:
            raise TargetCalendarError(f"Event not found for update: {existing.uid or existing.external_ref}")
        raw_ical = build_ical(desired, existing.uid)
        resource.data = raw_ical
        resource.save()
        href = existing.external_ref or str(getattr(resource, "url", "") or "")
        return parse_target_resource(raw_ical, href=href) or desired

    def delete_event(self, calendar_id: str, uid: str = "", href: str = "") -> bool:
        resource = self._find_resource(self._calendar(calendar_id), uid=uid, href=href)
        if resource is None:
            return False
        resource.delete()
        return True

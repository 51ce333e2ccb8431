import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from caldav.lib.error import NotFoundError

from feedmirror.caldav_client import CalDAVService, build_ical, normalize_calendar_name, parse_target_resource
from feedmirror.models import CalDAVConfig, TargetEvent


T0 = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)


def _calendar(url: str, name: str) -> mock.Mock:
    calendar = mock.Mock()
    calendar.url = url
    calendar.name = name
    return calendar


class CalDAVServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = CalDAVConfig(base_url="https://dav.example.com", username="u", password="p")
        self.family = _calendar("https://dav.example.com/cal/family/", "Family")
        self.work = _calendar("https://dav.example.com/cal/work/", "Work")
        self.principal = mock.Mock()
        self.principal.calendars.return_value = [self.work, self.family]
        patcher = mock.patch("feedmirror.caldav_client.caldav.DAVClient")
        self.dav_client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.dav_client_cls.return_value.principal.return_value = self.principal
        self.service = CalDAVService(self.config)

    def test_incomplete_config_raises(self) -> None:
        with self.assertRaises(RuntimeError):
            CalDAVService(CalDAVConfig()).list_calendars()

    def test_ensure_calendar_by_id_then_name(self) -> None:
        by_id = self.service.ensure_calendar("https://dav.example.com/cal/work", "Family")
        self.assertEqual(by_id.name, "Work")
        by_name = self.service.ensure_calendar("", "  family ")
        self.assertEqual(by_name.calendar_id, "https://dav.example.com/cal/family/")
        self.principal.make_calendar.assert_not_called()

    def test_ensure_calendar_creates_when_missing(self) -> None:
        created = _calendar("https://dav.example.com/cal/hockey/", "Hockey")
        self.principal.make_calendar.return_value = created
        info = self.service.ensure_calendar("", "Hockey")
        self.principal.make_calendar.assert_called_once_with(name="Hockey")
        self.assertEqual(info.calendar_id, "https://dav.example.com/cal/hockey/")

    def test_fetch_events_skips_unreadable_resources(self) -> None:
        event = TargetEvent(title="[Feed] Practice", start=T0, end=T0 + timedelta(hours=2), description="Feed-UID: x")
        good = mock.Mock(url="https://dav.example.com/cal/family/a.ics", data=build_ical(event, "uid-a"))
        bad = mock.Mock(url="https://dav.example.com/cal/family/b.ics", data="not a calendar")
        self.family.search.return_value = [good, bad]

        events = self.service.fetch_events("https://dav.example.com/cal/family/", T0, T0 + timedelta(days=1))

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].uid, "uid-a")
        self.assertEqual(events[0].external_ref, "https://dav.example.com/cal/family/a.ics")
        self.family.search.assert_called_once_with(start=T0, end=T0 + timedelta(days=1), event=True, expand=False)

    def test_delete_missing_event_returns_false(self) -> None:
        self.family.event_by_url.side_effect = NotFoundError("gone")
        self.family.event_by_uid.side_effect = NotFoundError("gone")
        deleted = self.service.delete_event("https://dav.example.com/cal/family/", uid="uid-a", href="/a.ics")
        self.assertFalse(deleted)

    def test_update_rewrites_resource(self) -> None:
        resource = mock.Mock(url="https://dav.example.com/cal/family/a.ics")
        self.family.event_by_url.return_value = resource
        existing = TargetEvent(title="[Feed] Practice", start=T0, uid="uid-a", external_ref=resource.url)
        desired = TargetEvent(title="[Feed] Practice", start=T0 + timedelta(hours=1), description="Feed-UID: x")

        saved = self.service.update_event("https://dav.example.com/cal/family/", existing, desired)

        resource.save.assert_called_once()
        self.assertEqual(saved.uid, "uid-a")
        self.assertEqual(saved.start, T0 + timedelta(hours=1))

    def test_update_missing_event_raises(self) -> None:
        self.family.event_by_uid.side_effect = NotFoundError("gone")
        existing = TargetEvent(title="[Feed] Practice", start=T0, uid="uid-a")
        with self.assertRaises(RuntimeError):
            self.service.update_event("https://dav.example.com/cal/family/", existing, existing)


class ResourceParsingTests(unittest.TestCase):
    def test_build_and_parse(self) -> None:
        event = TargetEvent(
            title="[Feed] Practice",
            start=T0,
            end=T0 + timedelta(hours=2),
            location="Rink A",
            description="Bring skates\n\nFeed-UID: feed-stable-1",
        )
        parsed = parse_target_resource(build_ical(event, "uid-1").encode("utf-8"), href="/cal/uid-1.ics")
        self.assertEqual(parsed.title, event.title)
        self.assertEqual(parsed.start, T0)
        self.assertEqual(parsed.description, event.description)
        self.assertEqual(parsed.uid, "uid-1")
        self.assertEqual(parsed.external_ref, "/cal/uid-1.ics")
        self.assertTrue(parsed.etag)

    def test_normalize_calendar_name(self) -> None:
        self.assertEqual(normalize_calendar_name("  My   Family "), "my family")


if __name__ == "__main__":
    unittest.main()

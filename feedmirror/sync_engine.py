from __future__ import annotations

import logging
import threading
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from feedmirror.caldav_client import CalDAVService
from feedmirror.change_detector import MatchSettings, expected_end
from feedmirror.config_manager import ConfigManager
from feedmirror.diagnostics import feed_consistency, find_duplicate_targets, matching_report
from feedmirror.executor import MutationExecutor
from feedmirror.feed_client import FeedClient, FeedLoadError
from feedmirror.identity import is_managed
from feedmirror.models import AppConfig, SourceEvent, SyncResult, TargetEvent, sync_window
from feedmirror.reconciler import (
    ACTION_DELETE,
    CREATED,
    MIGRATED,
    REMOVED,
    UNCHANGED,
    UPDATED,
    MutationRequest,
    ReconciliationResult,
    Reconciler,
)
from feedmirror.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_SYNC_META_KEY = "last_sync_time"
LAST_SUCCESS_META_KEY = "last_success_time"


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def select_managed_events(events: Iterable[TargetEvent], settings: MatchSettings) -> list[TargetEvent]:
    return [event for event in events if is_managed(event, settings.title_prefix, settings.marker_labels)]


def select_window_events(
    events: Iterable[SourceEvent],
    window_start: datetime,
    window_end: datetime,
    default_duration: timedelta = timedelta(hours=2),
) -> list[SourceEvent]:
    """Keep feed events whose mirrored span overlaps the window, as a CalDAV time-range query does."""
    return [
        event
        for event in events
        if event.start is not None
        and event.start < window_end
        and expected_end(event, default_duration) > window_start
    ]


def summarize_counts(counts: dict[str, int]) -> str:
    if not any(counts.get(name, 0) for name in (CREATED, UPDATED, MIGRATED, REMOVED)):
        return f"No changes needed ({counts.get(UNCHANGED, 0)} unchanged)."
    return (
        f"Created {counts.get(CREATED, 0)}, updated {counts.get(UPDATED, 0)}, "
        f"migrated {counts.get(MIGRATED, 0)}, removed {counts.get(REMOVED, 0)}, "
        f"unchanged {counts.get(UNCHANGED, 0)}."
    )


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._run_lock = threading.Lock()

    @property
    def is_busy(self) -> bool:
        return self._run_lock.locked()

    def _missing_config_reason(self, config: AppConfig) -> str:
        if not config.feed.url:
            return "Feed URL missing. Sync skipped."
        if not config.caldav.base_url or not config.caldav.username:
            return "CalDAV config missing base_url/username. Sync skipped."
        return ""

    def _open_target_calendar(self, config: AppConfig) -> tuple[AppConfig, CalDAVService, str]:
        service = CalDAVService(config.caldav)
        info = service.ensure_calendar(config.caldav.calendar_id, config.caldav.calendar_name)
        if config.caldav.calendar_id != info.calendar_id:
            self.config_manager.update({"caldav": {"calendar_id": info.calendar_id}})
            config = self.config_manager.load()
        return config, service, info.calendar_id

    def _load_targets(
        self,
        service: CalDAVService,
        calendar_id: str,
        settings: MatchSettings,
        window: tuple[datetime, datetime],
    ) -> list[TargetEvent]:
        return select_managed_events(service.fetch_events(calendar_id, window[0], window[1]), settings)

    def _record_plan(self, run_id: int, result: ReconciliationResult, trigger: str) -> None:
        if result.source_collisions or result.target_collisions:
            self.state_store.record_audit_event(
                run_id=run_id,
                identity="sync",
                action="identity_collisions",
                details={
                    "trigger": trigger,
                    "source_collisions": result.source_collisions,
                    "target_collisions": result.target_collisions,
                },
            )
        if result.dropped_sources:
            self.state_store.record_audit_event(
                run_id=run_id,
                identity="sync",
                action="dropped_source_events",
                details={"trigger": trigger, "count": result.dropped_sources},
            )

    def run_once(self, trigger: str = "manual", dry_run: bool = False) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Sync run (%s) skipped: another run is in progress", trigger)
            return SyncResult(
                status="skipped",
                message="Another sync run is in progress.",
                duration_ms=0,
                trigger=trigger,
            )
        try:
            return self._run(trigger=trigger, dry_run=dry_run)
        finally:
            self._run_lock.release()

    def _run(self, *, trigger: str, dry_run: bool) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        reason = self._missing_config_reason(config)
        if reason:
            duration_ms = _elapsed_ms(started_at)
            run_id = self.state_store.record_sync_run(
                trigger=trigger,
                status="skipped",
                message=reason,
                duration_ms=duration_ms,
            )
            return SyncResult(status="skipped", message=reason, duration_ms=duration_ms, trigger=trigger, run_id=run_id)

        run_id = self.state_store.start_sync_run(trigger=trigger)
        counts: dict[str, int] = {}
        try:
            settings = MatchSettings.from_config(config.matching)
            feed_client = FeedClient(config.feed, config.sync, config.matching)
            try:
                snapshot = feed_client.load()
            except FeedLoadError as exc:
                # Stop before any calendar access; a failed load is not an empty feed.
                message = f"Feed load failed, no changes applied: {exc}"
                logger.error(message)
                self.state_store.record_audit_event(
                    run_id=run_id,
                    identity="feed",
                    action="feed_load_failed",
                    details={"trigger": trigger, "error": str(exc)},
                )
                duration_ms = _elapsed_ms(started_at)
                self.state_store.finish_sync_run(run_id=run_id, status="error", message=message, duration_ms=duration_ms)
                return SyncResult(status="error", message=message, duration_ms=duration_ms, trigger=trigger, run_id=run_id)

            config, service, calendar_id = self._open_target_calendar(config)
            window = sync_window(started_at, config.sync.days_lookback, config.sync.days_lookahead)
            sources = select_window_events(snapshot.events, *window, settings.default_duration)
            targets = self._load_targets(service, calendar_id, settings, window)
            logger.info(
                "Reconciling %d feed events against %d mirrored events (%s)",
                len(sources),
                len(targets),
                trigger,
            )

            result, mutations = Reconciler(settings).reconcile(sources, targets)
            result.dropped_sources += snapshot.dropped
            self._record_plan(run_id, result, trigger)

            if dry_run:
                for request in mutations:
                    self.state_store.record_audit_event(
                        run_id=run_id,
                        identity=request.identity,
                        action=f"planned_{request.classification}",
                        details={"trigger": trigger, "request": request.to_dict()},
                    )
                counts = result.counts()
                message = f"Dry run. {summarize_counts(counts)}"
                duration_ms = _elapsed_ms(started_at)
                self.state_store.finish_sync_run(
                    run_id=run_id, status="dry_run", message=message, duration_ms=duration_ms, counts=counts
                )
                return SyncResult(
                    status="dry_run",
                    message=message,
                    duration_ms=duration_ms,
                    trigger=trigger,
                    run_id=run_id,
                    **counts,
                )

            executor = MutationExecutor(service, calendar_id, config.sync.mutation_delay_seconds)
            report = executor.apply(mutations)
            for request in report.succeeded:
                self.state_store.record_audit_event(
                    run_id=run_id,
                    identity=request.identity,
                    action=request.classification,
                    details={"trigger": trigger, "request": request.to_dict()},
                )
            for failure in report.failures:
                self.state_store.record_audit_event(
                    run_id=run_id,
                    identity=failure.request.identity,
                    action="mutation_failed",
                    details={"trigger": trigger, **failure.to_dict()},
                )

            counts = dict(report.applied)
            counts[UNCHANGED] = len(result.unchanged)
            counts["failed"] = report.failed
            status = "partial" if report.failed else "success"
            message = summarize_counts(counts)
            if report.failed:
                message = f"{message} {report.failed} mutation(s) failed."
            duration_ms = _elapsed_ms(started_at)
            self.state_store.finish_sync_run(
                run_id=run_id, status=status, message=message, duration_ms=duration_ms, counts=counts
            )
            finished_at = datetime.now(timezone.utc).isoformat()
            self.state_store.set_meta(LAST_SYNC_META_KEY, finished_at)
            if status == "success":
                self.state_store.set_meta(LAST_SUCCESS_META_KEY, finished_at)
            logger.info("Sync run %s finished: %s", run_id, message)
            return SyncResult(
                status=status,
                message=message,
                duration_ms=duration_ms,
                trigger=trigger,
                run_id=run_id,
                **counts,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run %s failed", run_id)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                counts=counts,
            )
            self.state_store.record_audit_event(
                run_id=run_id,
                identity="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                trigger=trigger,
                run_id=run_id,
            )

    def check_feed(self, sample_size: int = 3) -> dict[str, Any]:
        config = self.config_manager.load()
        client = FeedClient(config.feed, config.sync, config.matching)
        try:
            snapshot = client.load()
        except FeedLoadError as exc:
            return {"ok": False, "message": str(exc), "events": 0, "dropped": 0, "samples": []}
        return {
            "ok": True,
            "message": f"Feed reachable: {len(snapshot.events)} events.",
            "events": len(snapshot.events),
            "dropped": snapshot.dropped,
            "samples": [
                {"title": event.title, "identity": event.identity, "original_uid": event.original_uid}
                for event in snapshot.events[:sample_size]
            ],
        }

    def check_feed_consistency(self) -> dict[str, Any]:
        config = self.config_manager.load()
        client = FeedClient(config.feed, config.sync, config.matching)
        first = client.load()
        second = client.load()
        return feed_consistency(first.events, second.events)

    def matching_diagnostics(self) -> dict[str, Any]:
        config = self.config_manager.load()
        settings = MatchSettings.from_config(config.matching)
        snapshot = FeedClient(config.feed, config.sync, config.matching).load()
        config, service, calendar_id = self._open_target_calendar(config)
        window = sync_window(datetime.now(timezone.utc), config.sync.days_lookback, config.sync.days_lookahead)
        sources = select_window_events(snapshot.events, *window, settings.default_duration)
        targets = self._load_targets(service, calendar_id, settings, window)
        return matching_report(sources, targets, settings)

    def cleanup_duplicates(self, dry_run: bool = True) -> dict[str, Any]:
        if not self._run_lock.acquire(blocking=False):
            return {"status": "skipped", "message": "Another sync run is in progress.", "groups": 0, "removed": 0}
        try:
            config = self.config_manager.load()
            settings = MatchSettings.from_config(config.matching)
            config, service, calendar_id = self._open_target_calendar(config)
            window = sync_window(datetime.now(timezone.utc), config.sync.days_lookback, config.sync.days_lookahead)
            groups = find_duplicate_targets(self._load_targets(service, calendar_id, settings, window))
            extras = [target for group in groups for target in group[1:]]
            payload: dict[str, Any] = {
                "status": "dry_run" if dry_run else "success",
                "groups": len(groups),
                "duplicates": [target.to_dict() for target in extras],
                "removed": 0,
                "failed": 0,
            }
            if dry_run or not extras:
                return payload
            executor = MutationExecutor(service, calendar_id, config.sync.mutation_delay_seconds)
            report = executor.apply(
                MutationRequest(action=ACTION_DELETE, classification=REMOVED, target=target) for target in extras
            )
            for request in report.succeeded:
                self.state_store.record_audit_event(
                    identity=request.identity,
                    action="duplicate_removed",
                    details={"target": request.target.to_dict() if request.target else None},
                )
            payload["removed"] = report.applied.get(REMOVED, 0)
            payload["failed"] = report.failed
            if report.failed:
                payload["status"] = "partial"
            return payload
        finally:
            self._run_lock.release()

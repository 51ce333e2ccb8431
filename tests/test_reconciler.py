import itertools
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from feedmirror.change_detector import MatchSettings, project_target
from feedmirror.identity import annotate_identity, derive_identity, extract_identity
from feedmirror.models import SourceEvent, TargetEvent
from feedmirror.reconciler import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_UPDATE,
    MIGRATED,
    REMOVED,
    Reconciler,
    reconcile,
)


T0 = datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)


def _source(title: str, start: datetime, location: str = "", description: str = "", **kwargs) -> SourceEvent:
    return annotate_identity(
        SourceEvent(title=title, start=start, location=location, description=description, **kwargs)
    )


def _apply(targets: list[TargetEvent], mutations) -> list[TargetEvent]:
    """Apply mutation requests to an in-memory calendar the way a CalDAV server would."""
    counter = itertools.count(1)
    current = list(targets)
    for request in mutations:
        if request.action == ACTION_CREATE:
            uid = f"created-{next(counter)}"
            current.append(replace(request.desired, uid=uid, external_ref=f"/cal/{uid}.ics"))
        elif request.action == ACTION_UPDATE:
            index = next(i for i, item in enumerate(current) if item is request.target)
            current[index] = replace(
                request.desired,
                uid=request.target.uid,
                external_ref=request.target.external_ref,
            )
        elif request.action == ACTION_DELETE:
            current = [item for item in current if item is not request.target]
    return current


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = MatchSettings()
        self.reconciler = Reconciler(self.settings)

    def test_new_event_is_created_with_identity_marker(self) -> None:
        source = _source("Practice", T0, "Rink A")
        result, mutations = self.reconciler.reconcile([source], [])

        self.assertEqual(result.counts(), {"created": 1, "updated": 0, "migrated": 0, "unchanged": 0, "removed": 0})
        self.assertEqual(len(mutations), 1)
        self.assertEqual(mutations[0].action, ACTION_CREATE)
        desired = mutations[0].desired
        self.assertEqual(desired.title, "[Feed] Practice")
        self.assertEqual(extract_identity(desired.description), derive_identity("Practice", T0, "Rink A"))

        targets = _apply([], mutations)
        second, second_mutations = self.reconciler.reconcile([source], targets)
        self.assertEqual(second_mutations, [])
        self.assertEqual(second.counts()["unchanged"], 1)
        self.assertFalse(second.has_changes)

    def test_location_case_difference_is_unchanged(self) -> None:
        source = _source("Practice", T0, "Rink A")
        target = replace(project_target(source, self.settings), location="rink a", uid="t-1")
        result, mutations = self.reconciler.reconcile([source], [target])
        self.assertEqual(mutations, [])
        self.assertEqual(len(result.unchanged), 1)

    def test_identity_match_with_changed_time_is_updated_not_recreated(self) -> None:
        source = _source("Practice", T0, "Rink A", end=T0 + timedelta(hours=1))
        target = replace(project_target(source, self.settings), end=T0 + timedelta(hours=2), uid="t-1")
        result, mutations = self.reconciler.reconcile([source], [target])
        self.assertEqual(len(result.updated), 1)
        self.assertEqual(result.removed, [])
        self.assertEqual([m.action for m in mutations], [ACTION_UPDATE])
        self.assertEqual(mutations[0].fields, ("end",))
        self.assertIs(mutations[0].target, target)

    def test_migration_rescue_by_content(self) -> None:
        source = _source("Practice", T0, "Rink A", description="Bring skates")
        legacy = TargetEvent(
            title="[Feed] Practice",
            start=T0,
            end=T0 + timedelta(hours=2),
            location="Rink A",
            description="Bring skates\n\nFeed-UID: 8d0c-random-uid",
            uid="t-legacy",
        )
        result, mutations = self.reconciler.reconcile([source], [legacy])
        self.assertEqual(result.counts()["migrated"], 1)
        self.assertEqual(result.created, [])
        self.assertEqual(result.removed, [])
        self.assertEqual(len(mutations), 1)
        self.assertEqual(mutations[0].action, ACTION_UPDATE)
        self.assertEqual(mutations[0].classification, MIGRATED)

        after = _apply([legacy], mutations)
        self.assertEqual(extract_identity(after[0].description), source.identity)
        _, again = self.reconciler.reconcile([source], after)
        self.assertEqual(again, [])

    def test_legacy_marker_label_is_migrated(self) -> None:
        settings = MatchSettings(title_prefix="[Hockey] ", legacy_marker_labels=("Hockey-UID",))
        source = _source("Game", T0, "Arena")
        legacy = TargetEvent(
            title="[Hockey] Game",
            start=T0,
            end=T0 + timedelta(hours=2),
            location="Arena",
            description="\n\nHockey-UID:benchapp 123",
            uid="t-legacy",
        )
        result, mutations = reconcile([source], [legacy], settings)
        self.assertEqual(len(result.migrated), 1)
        after = _apply([legacy], mutations)
        self.assertIn("Feed-UID: ", after[0].description)
        self.assertNotIn("Hockey-UID", after[0].description)
        second, again = reconcile([source], after, settings)
        self.assertEqual(again, [])
        self.assertEqual(len(second.unchanged), 1)

    def test_content_match_protects_target_from_deletion(self) -> None:
        source = _source("Practice", T0, "Rink A")
        owned = replace(project_target(source, self.settings), uid="t-owned")
        look_alike = replace(owned, description="Feed-UID: unknown-identity", uid="t-look-alike")
        result, mutations = self.reconciler.reconcile([source], [owned, look_alike])
        self.assertEqual(result.removed, [])
        self.assertEqual(mutations, [])
        self.assertEqual(len(result.unchanged), 1)

    def test_orphans_are_removed_after_upserts(self) -> None:
        kept = _source("Practice", T0, "Rink A")
        new = _source("Game", T0 + timedelta(days=1), "Arena")
        orphan_source = _source("Cancelled", T0 + timedelta(days=2), "Rink B")
        kept_target = replace(project_target(kept, self.settings), uid="t-kept")
        orphan = replace(project_target(orphan_source, self.settings), uid="t-orphan")

        result, mutations = self.reconciler.reconcile([kept, new], [orphan, kept_target])
        self.assertEqual([m.action for m in mutations], [ACTION_CREATE, ACTION_DELETE])
        self.assertEqual(result.removed, [orphan])
        self.assertEqual(mutations[1].classification, REMOVED)
        self.assertIs(mutations[1].target, orphan)

    def test_legitimately_empty_source_removes_every_target(self) -> None:
        first = _source("Practice", T0, "Rink A")
        second = _source("Game", T0 + timedelta(days=1), "Arena")
        targets = [
            replace(project_target(first, self.settings), uid="t-1"),
            replace(project_target(second, self.settings), uid="t-2"),
        ]
        result, mutations = self.reconciler.reconcile([], targets)
        self.assertEqual(result.removed, targets)
        self.assertEqual([m.target.uid for m in mutations], ["t-1", "t-2"])
        self.assertTrue(all(m.action == ACTION_DELETE for m in mutations))

    def test_idempotent_after_applying_mixed_plan(self) -> None:
        sources = [
            _source("Practice", T0, "Rink A", description="Bring skates"),
            _source("Game", T0 + timedelta(days=1), "Arena", end=T0 + timedelta(days=1, hours=1)),
            _source("Skills", T0 + timedelta(days=2), "Rink B"),
            _source("Tournament", T0 + timedelta(days=3), ""),
        ]
        stale = replace(
            project_target(sources[0], self.settings),
            uid="t-1",
            description=f"Old notes\n\nFeed-UID: {sources[0].identity}",
        )
        migrating = TargetEvent(
            title="[Feed] Game",
            start=sources[1].start,
            end=sources[1].end,
            location="Arena",
            description="Feed-UID: legacy-random",
            uid="t-2",
        )
        orphan = replace(project_target(_source("Gone", T0, "Rink C"), self.settings), uid="t-3")
        targets = [stale, migrating, orphan]

        result, mutations = self.reconciler.reconcile(sources, targets)
        self.assertEqual(
            result.counts(),
            {"created": 2, "updated": 1, "migrated": 1, "unchanged": 0, "removed": 1},
        )
        after = _apply(targets, mutations)
        second, again = self.reconciler.reconcile(sources, after)
        self.assertEqual(again, [])
        self.assertEqual(second.counts()["unchanged"], 4)

    def test_identity_claimed_target_is_not_rescued_twice(self) -> None:
        source = _source("Practice", T0, "Rink A")
        target = replace(project_target(source, self.settings), uid="t-1")
        # Same content key as the claimed target, different identity.
        twin = replace(source, identity="feed-stable-twin")
        result, mutations = self.reconciler.reconcile([source, twin], [target])
        self.assertEqual(len(result.unchanged), 1)
        self.assertEqual(len(result.created), 1)
        self.assertEqual(result.migrated, [])
        self.assertEqual([m.action for m in mutations], [ACTION_CREATE])

    def test_source_collision_last_wins_by_default(self) -> None:
        first = SourceEvent(title="Practice", start=T0, location="Rink A", identity="feed-stable-1")
        second = SourceEvent(title="Game", start=T0, location="Arena", identity="feed-stable-1")
        result, mutations = self.reconciler.reconcile([first, second], [])
        self.assertEqual(result.source_collisions, ["feed-stable-1"])
        self.assertEqual(result.created, [second])
        self.assertEqual(mutations[0].desired.title, "[Feed] Game")

    def test_source_collision_first_policy(self) -> None:
        reconciler = Reconciler(MatchSettings(collision_policy="first"))
        first = SourceEvent(title="Practice", start=T0, location="Rink A", identity="feed-stable-1")
        second = SourceEvent(title="Game", start=T0, location="Arena", identity="feed-stable-1")
        result, _ = reconciler.reconcile([first, second], [])
        self.assertEqual(result.created, [first])
        self.assertEqual(result.source_collisions, ["feed-stable-1"])

    def test_duplicate_target_identities_are_counted_and_kept(self) -> None:
        source = _source("Practice", T0, "Rink A")
        copy_a = replace(project_target(source, self.settings), uid="t-a")
        copy_b = replace(project_target(source, self.settings), uid="t-b")
        result, mutations = self.reconciler.reconcile([source], [copy_a, copy_b])
        self.assertEqual(result.target_collisions, [source.identity])
        self.assertEqual(result.removed, [])
        self.assertEqual(mutations, [])

    def test_incomplete_sources_are_dropped(self) -> None:
        result, mutations = self.reconciler.reconcile(
            [SourceEvent(title="", start=T0), SourceEvent(title="Practice", start=None)],
            [],
        )
        self.assertEqual(result.dropped_sources, 2)
        self.assertEqual(mutations, [])

    def test_missing_identity_is_derived(self) -> None:
        source = SourceEvent(title="Practice", start=T0, location="Rink A")
        result, mutations = self.reconciler.reconcile([source], [])
        self.assertEqual(result.created[0].identity, derive_identity("Practice", T0, "Rink A"))
        self.assertEqual(mutations[0].identity, derive_identity("Practice", T0, "Rink A"))

    def test_switching_identity_scheme_migrates_existing_events(self) -> None:
        source = _source("Practice", T0, "Rink A")
        target = replace(project_target(source, self.settings), uid="t-1")
        stronger = MatchSettings(identity_scheme="blake2b64")
        rehashed = annotate_identity(replace(source, identity=""), scheme="blake2b64")

        result, mutations = reconcile([rehashed], [target], stronger)
        self.assertEqual(len(result.migrated), 1)
        self.assertEqual(result.removed, [])
        after = _apply([target], mutations)
        _, again = reconcile([rehashed], after, stronger)
        self.assertEqual(again, [])

    def test_classification_is_deterministic(self) -> None:
        sources = [_source("Practice", T0 + timedelta(days=i), "Rink A") for i in range(5)]
        targets = [replace(project_target(sources[1], self.settings), uid="t-1")]
        first, first_mutations = self.reconciler.reconcile(sources, targets)
        second, second_mutations = self.reconciler.reconcile(sources, targets)
        self.assertEqual(first.counts(), second.counts())
        self.assertEqual(
            [(m.action, m.identity) for m in first_mutations],
            [(m.action, m.identity) for m in second_mutations],
        )


if __name__ == "__main__":
    unittest.main()

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from feedsync.models import (
    CreateOp,
    DeleteOp,
    FetchedEvent,
    MissOp,
    RestoreOp,
    SyncOperations,
    SyncOptions,
    UpdateOp,
)
from feedsync.reconciler import compute_sync_ops
from feedsync.state_store import StateStore


NOW = datetime(2026, 2, 20, 12, 0, tzinfo=timezone.utc)


def _event(uid: str = "u1", summary: str = "Kamp mod AGF", **kwargs) -> FetchedEvent:
    values = {
        "start_date_string": "2026-03-01",
        "start_time_string": "10:00:00",
        "end_date_string": "2026-03-01",
        "end_time_string": "11:30:00",
        "location": "Stadion Nord",
        "categories": ["Match"],
    }
    values.update(kwargs)
    return FetchedEvent(uid=uid, summary=summary, **values)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self._temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _create(self, event: FetchedEvent, category_id: str | None = "kamp") -> str:
        ops = SyncOperations(creates=[CreateOp(event=event, reason="new")])
        self.store.apply_operations("club", ops, category_for=lambda _event: category_id, now=NOW)
        rows = [row for row in self.store.load_rows("club") if row.provider_event_uid == event.uid]
        return rows[-1].id

    def test_create_persists_row_and_metadata(self) -> None:
        row_id = self._create(_event())
        row = self.store.get_row(row_id)
        self.assertIsNotNone(row)
        self.assertEqual(row.title, "Kamp mod AGF")
        self.assertEqual(row.start_date, "2026-03-01")
        self.assertEqual(row.end_time, "11:30:00")
        self.assertEqual(row.miss_count, 0)
        self.assertFalse(row.deleted)
        self.assertEqual(row.raw_payload["categories"], ["Match"])
        self.assertEqual(row.last_seen_at, NOW)
        meta = self.store.get_local_meta(row_id)
        self.assertEqual(meta["category_id"], "kamp")
        self.assertFalse(meta["manually_set_category"])

    def test_create_without_chooser_skips_metadata(self) -> None:
        ops = SyncOperations(creates=[CreateOp(event=_event(), reason="new")])
        summary = self.store.apply_operations("club", ops, now=NOW)
        self.assertEqual(summary.created, 1)
        self.assertEqual(summary.metadata_created, 0)
        row = self.store.load_rows("club")[0]
        self.assertIsNone(self.store.get_local_meta(row.id))

    def test_unchanged_update_only_refreshes_presence(self) -> None:
        row_id = self._create(_event())
        later = NOW + timedelta(hours=2)
        self.store.apply_operations(
            "club", SyncOperations(misses=[MissOp(db_row_id=row_id, miss_count=1, reason="missing")]), now=later
        )
        self.assertEqual(self.store.get_row(row_id).miss_count, 1)

        summary = self.store.apply_operations(
            "club",
            SyncOperations(updates=[UpdateOp(db_row_id=row_id, event=_event(), reason="seen")]),
            now=later,
        )
        self.assertEqual(summary.updated, 0)
        self.assertEqual(summary.skipped_updates, 1)
        row = self.store.get_row(row_id)
        self.assertEqual(row.miss_count, 0)
        self.assertEqual(row.last_seen_at, later)
        self.assertEqual(row.updated_at, NOW)

    def test_changed_update_writes_fields(self) -> None:
        row_id = self._create(_event())
        later = NOW + timedelta(hours=1)
        changed = _event(summary="Kamp mod AGF (flyttet)", start_time_string="12:00:00")
        summary = self.store.apply_operations(
            "club",
            SyncOperations(updates=[UpdateOp(db_row_id=row_id, event=changed, reason="changed")]),
            now=later,
        )
        self.assertEqual(summary.updated, 1)
        row = self.store.get_row(row_id)
        self.assertEqual(row.title, "Kamp mod AGF (flyttet)")
        self.assertEqual(row.start_time, "12:00:00")
        self.assertEqual(row.updated_at, later)

    def test_soft_delete_and_restore(self) -> None:
        row_id = self._create(_event())
        self.store.apply_operations(
            "club", SyncOperations(soft_deletes=[DeleteOp(db_row_id=row_id, reason="missing")]), now=NOW
        )
        row = self.store.get_row(row_id)
        self.assertTrue(row.deleted)
        self.assertEqual(row.deleted_reason, "missing-from-feed")
        self.assertEqual(self.store.load_rows("club", include_deleted=False), [])

        summary = self.store.apply_operations(
            "club",
            SyncOperations(restores=[RestoreOp(db_row_id=row_id, event=_event(), reason="back")]),
            now=NOW,
        )
        self.assertEqual(summary.restored, 1)
        row = self.store.get_row(row_id)
        self.assertFalse(row.deleted)
        self.assertIsNone(row.deleted_reason)
        self.assertEqual(row.miss_count, 0)

    def test_immediate_delete_removes_row_and_metadata(self) -> None:
        row_id = self._create(_event())
        summary = self.store.apply_operations(
            "club",
            SyncOperations(immediate_deletes=[DeleteOp(db_row_id=row_id, reason="cancelled")]),
            now=NOW,
        )
        self.assertEqual(summary.immediately_deleted, 1)
        self.assertIsNone(self.store.get_row(row_id))
        self.assertIsNone(self.store.get_local_meta(row_id))

    def test_failed_batch_is_rolled_back(self) -> None:
        def broken_chooser(_event: FetchedEvent) -> str:
            raise RuntimeError("boom")

        ops = SyncOperations(creates=[CreateOp(event=_event(), reason="new")])
        with self.assertRaises(RuntimeError):
            self.store.apply_operations("club", ops, category_for=broken_chooser, now=NOW)
        self.assertEqual(self.store.load_rows("club"), [])

    def test_user_deleted_row_is_not_restored(self) -> None:
        row_id = self._create(_event())
        self.assertTrue(self.store.mark_user_deleted(row_id))
        self.assertFalse(self.store.mark_user_deleted("missing"))

        ops = compute_sync_ops([_event()], self.store.load_rows("club"), options=SyncOptions(now=NOW))
        self.assertTrue(ops.is_empty)
        self.assertEqual(self.store.get_row(row_id).deleted_reason, "user-delete")

    def test_repeated_misses_reach_soft_delete(self) -> None:
        row_id = self._create(_event())
        options = SyncOptions(now=NOW + timedelta(hours=1), grace_hours=48, max_miss_count=2)
        for _ in range(2):
            ops = compute_sync_ops([], self.store.load_rows("club"), options=options)
            self.assertEqual([op.db_row_id for op in ops.misses], [row_id])
            self.store.apply_operations("club", ops, now=options.now)
        ops = compute_sync_ops([], self.store.load_rows("club"), options=options)
        self.assertEqual([op.db_row_id for op in ops.soft_deletes], [row_id])

    def test_category_backfill_candidates_skip_manual_choices(self) -> None:
        auto_id = self._create(_event(uid="auto"))
        manual_id = self._create(_event(uid="manual"))
        bare_id = self._create(_event(uid="bare"), category_id=None)
        self.store.set_category(manual_id, "traening", manual=True)

        candidates = {row.id: meta for row, meta in self.store.meta_backfill_candidates("club")}
        self.assertIn(auto_id, candidates)
        self.assertNotIn(manual_id, candidates)
        self.assertIsNone(candidates[bare_id]["category_id"])
        self.assertEqual(self.store.get_local_meta(manual_id)["category_id"], "traening")

    def test_sync_runs_and_log(self) -> None:
        run_id = self.store.start_sync_run(calendar_id="club", trigger="manual")
        ops = SyncOperations(creates=[CreateOp(event=_event(), reason="New event not found in database")])
        self.store.apply_operations("club", ops, run_id=run_id, now=NOW)
        self.store.finish_sync_run(
            run_id=run_id, status="success", message="ok", duration_ms=12, counts={"created": 1}
        )

        runs = self.store.recent_sync_runs(limit=5, calendar_id="club")
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["status"], "success")
        self.assertEqual(runs[0]["counts"], {"created": 1})
        self.assertEqual(self.store.recent_sync_runs(calendar_id="other"), [])

        log = self.store.recent_sync_log(run_id=run_id)
        self.assertEqual(len(log), 1)
        self.assertEqual(log[0]["action"], "created")
        self.assertEqual(log[0]["details"]["reason"], "New event not found in database")


if __name__ == "__main__":
    unittest.main()

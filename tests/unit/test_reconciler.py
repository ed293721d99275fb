"""
Unit tests for the reconciliation engine

Tests verify:
- Window computation (look-back always wins)
- Incremental and full-scan paging
- Cursor persistence and failure handling
- The orders update scenario (realtime then reconcile, no revert)
- Self-healing after a realtime outage
"""

import threading
from datetime import timedelta

import pytest

from src.replication.config import ReconciliationOptions
from src.replication.events import ChangeEvent, ChangeType
from src.replication.processor import EventProcessor
from src.replication.reconciler import ReconciliationEngine
from src.replication.registry import TableRegistry, TableSpec
from src.replication.state import CursorRecord


class Clock:
    """Settable clock for deterministic windows."""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def make_engine(source, target, tables, cursor_store, retry_policy, clock, **options):
    registry = TableRegistry(tables)
    registry.resolve(source)
    return ReconciliationEngine(
        source=source,
        target=target,
        registry=registry,
        cursor_store=cursor_store,
        retry_policy=retry_policy,
        options=ReconciliationOptions(**options),
        clock=clock,
    )


# ============================================================================
# Window computation
# ============================================================================

class TestComputeSince:
    """Test ReconciliationEngine.compute_since"""

    @pytest.fixture
    def engine(self, registry, cursor_store, retry_policy):
        options = ReconciliationOptions(lookback_ms=300_000, initial_backfill_ms=86_400_000)
        return ReconciliationEngine(None, None, registry, cursor_store, retry_policy, options)

    def test_never_reconciled_uses_initial_backfill(self, engine, now):
        assert engine.compute_since(CursorRecord(), now) == now - timedelta(days=1)

    def test_initialized_without_cursor_uses_lookback(self, engine, now):
        assert engine.compute_since(CursorRecord(initialized=True), now) == now - timedelta(minutes=5)

    def test_older_cursor_wins(self, engine, now):
        cursor = now - timedelta(hours=2)

        assert engine.compute_since(CursorRecord(cursor=cursor, initialized=True), now) == cursor

    def test_lookback_wins_over_recent_cursor(self, engine, now):
        cursor = now - timedelta(seconds=10)

        assert engine.compute_since(CursorRecord(cursor=cursor, initialized=True), now) == now - timedelta(minutes=5)


# ============================================================================
# Incremental passes
# ============================================================================

class TestIncrementalPass:
    """Test incremental reconciliation of one table"""

    def test_pages_until_short_page(self, make_source, fake_target, cursor_store, retry_policy, now):
        rows = [{"id": i, "updated_at": now - timedelta(minutes=1)} for i in range(1, 8)]
        source = make_source(rows={"public:orders": rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now), batch_size=3)

        result = engine.reconcile_table(table)

        assert result.success is True
        assert result.rows == 7
        assert [r[4] for r in source.reads] == [0, 3, 6]
        assert len(fake_target.rows("public:orders")) == 7

    def test_exact_multiple_ends_on_empty_page(self, make_source, fake_target, cursor_store, retry_policy, now):
        rows = [{"id": i, "updated_at": now} for i in range(1, 7)]
        source = make_source(rows={"public:orders": rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now), batch_size=3)

        result = engine.reconcile_table(table)

        assert result.rows == 6
        assert len(source.reads) == 3

    def test_rows_outside_window_ignored(self, make_source, fake_target, cursor_store, retry_policy, now):
        rows = [
            {"id": 1, "updated_at": now - timedelta(days=2)},
            {"id": 2, "updated_at": now - timedelta(hours=1)},
        ]
        source = make_source(rows={"public:orders": rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))

        engine.reconcile_table(table)

        assert list(fake_target.rows("public:orders")) == [(2,)]

    def test_cursor_persisted(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))

        engine.reconcile_table(table)

        record = cursor_store.get("public:orders")
        assert record.cursor == now
        assert record.initialized is True
        assert record.full_scan is False
        assert record.last_batch_count == 1

    def test_read_failure_leaves_cursor(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))
        source.failing_reads.add("public:orders")

        result = engine.reconcile_table(table)

        assert result.success is False
        assert cursor_store.get("public:orders") == CursorRecord()

    def test_exhausted_upsert_leaves_cursor(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))
        fake_target.always_fail = True

        result = engine.reconcile_table(table)

        assert result.success is False
        assert "upsert failed" in result.error
        assert cursor_store.get("public:orders").initialized is False

    def test_shutdown_interrupts_without_persisting(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))
        engine.shutdown_event.set()

        result = engine.reconcile_table(table)

        assert result.success is False
        assert fake_target.calls == []
        assert cursor_store.keys() == []


class TestFullScan:
    """Test full-scan reconciliation"""

    def test_full_scan_pages_by_primary_key(self, make_source, fake_target, cursor_store, retry_policy, now):
        rows = [{"code": c, "name": c.lower()} for c in ["US", "FR", "DE", "JP", "BR"]]
        source = make_source(rows={"public:countries": rows})
        table = TableSpec(name="countries", primary_keys=["code"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now), batch_size=2)

        result = engine.reconcile_table(table)

        assert result.mode == "full"
        assert result.rows == 5
        assert [r[2] for r in source.reads] == [0, 2, 4]

        record = cursor_store.get("public:countries")
        assert record.cursor is None
        assert record.full_scan is True
        assert record.last_batch_count == 5


# ============================================================================
# Whole sweep
# ============================================================================

class TestReconcileAll:
    """Test ReconciliationEngine.reconcile_all"""

    def test_skips_inactive_and_disabled(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={
            "public:orders": [{"id": 1, "updated_at": now}],
            "public:customers": [{"id": 1, "updated_at": now}],
        })
        tables = [
            TableSpec(name="orders", primary_keys=["id"]),
            TableSpec(name="customers", primary_keys=["id"], reconcile_enabled=False),
            TableSpec(name="ghost", primary_keys=["id"]),
        ]
        engine = make_engine(source, fake_target, tables, cursor_store, retry_policy, Clock(now))

        report = engine.reconcile_all()

        assert [r.table for r in report.tables] == ["public:orders"]
        assert report.succeeded is True

    def test_one_table_failure_does_not_stop_others(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={
            "public:orders": [{"id": 1, "updated_at": now}],
            "public:customers": [{"id": 1, "updated_at": now}],
        })
        tables = [TableSpec(name="orders", primary_keys=["id"]), TableSpec(name="customers", primary_keys=["id"])]
        engine = make_engine(source, fake_target, tables, cursor_store, retry_policy, Clock(now))
        source.failing_reads.add("public:orders")

        report = engine.reconcile_all()

        assert [r.success for r in report.tables] == [False, True]
        assert report.succeeded is False
        assert len(fake_target.rows("public:customers")) == 1

    def test_records_metrics(self, make_source, fake_target, cursor_store, retry_policy, replication_metrics, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))
        engine.metrics = replication_metrics

        engine.reconcile_all()

        runs = replication_metrics.reconciliation_runs_total.labels(
            table_name="public:orders", mode="incremental", status="success"
        )._value.get()
        assert runs == 1

    def test_cursor_monotonic_over_passes(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"])
        clock = Clock(now)
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, clock)

        seen = []
        for _ in range(4):
            engine.reconcile_all()
            seen.append(cursor_store.get("public:orders").last_synced_at)
            clock.advance(seconds=30)

        assert seen == sorted(seen)
        assert len(set(seen)) == 4

    def test_rerun_unchanged_source_is_idempotent(self, make_source, fake_target, cursor_store, retry_policy, now):
        rows = [{"id": i, "updated_at": now, "total": i * 10} for i in range(1, 4)]
        source = make_source(rows={"public:orders": rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, Clock(now))

        engine.reconcile_all()
        first = {k: dict(v) for k, v in fake_target.rows("public:orders").items()}
        engine.reconcile_all()

        assert fake_target.rows("public:orders") == first

    def test_pending_table_probed_again_before_pass(self, make_source, fake_target, cursor_store, retry_policy, now):
        source = make_source(rows={"public:orders": [{"id": 1, "updated_at": now}]})
        table = TableSpec(name="orders", primary_keys=["id"], pending=True)
        engine = ReconciliationEngine(
            source=source,
            target=fake_target,
            registry=TableRegistry([table]),
            cursor_store=cursor_store,
            retry_policy=retry_policy,
            clock=Clock(now),
        )

        report = engine.reconcile_all()

        assert table.pending is False
        assert table.incremental_field == "updated_at"
        assert [r.table for r in report.tables] == ["public:orders"]
        assert len(fake_target.rows("public:orders")) == 1


# ============================================================================
# Scenarios
# ============================================================================

class TestOrdersScenario:
    """Realtime update followed by a reconciliation pass must not revert it"""

    def test_reconcile_after_realtime_keeps_latest(self, make_source, fake_target, cursor_store, retry_policy, now):
        t0 = now
        clock = Clock(t0 + timedelta(seconds=5))
        source_rows = [{"id": 1, "updated_at": t0, "status": "new"}]
        source = make_source(rows={"public:orders": source_rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(
            source, fake_target, [table], cursor_store, retry_policy, clock, lookback_ms=10_000
        )

        # First pass fetches the row
        engine.reconcile_all()
        assert fake_target.rows("public:orders")[(1,)]["status"] == "new"

        # Row updated at the source; realtime applies it immediately
        t1 = t0 + timedelta(seconds=8)
        source_rows[0] = {"id": 1, "updated_at": t1, "status": "paid"}
        processor = EventProcessor(fake_target, retry_policy)
        processor.process(ChangeEvent(table=table, change_type=ChangeType.UPDATE, row=dict(source_rows[0])))
        realtime_state = dict(fake_target.rows("public:orders")[(1,)])

        # Next pass rescans from now - lookback and re-upserts the same row
        clock.advance(seconds=5)
        engine.reconcile_all()

        assert fake_target.rows("public:orders")[(1,)] == realtime_state
        assert len(fake_target.rows("public:orders")) == 1

    def test_self_healing_after_outage(self, make_source, fake_target, cursor_store, retry_policy, now):
        """Changes made while realtime was down shorter than the look-back arrive on the next pass"""
        clock = Clock(now)
        source_rows = [{"id": 1, "updated_at": now - timedelta(minutes=1), "v": 1}]
        source = make_source(rows={"public:orders": source_rows})
        table = TableSpec(name="orders", primary_keys=["id"])
        engine = make_engine(source, fake_target, [table], cursor_store, retry_policy, clock, lookback_ms=300_000)
        engine.reconcile_all()

        # Outage: two minutes of unreplicated changes
        source_rows.append({"id": 2, "updated_at": now + timedelta(seconds=30), "v": 2})
        source_rows[0] = {"id": 1, "updated_at": now + timedelta(seconds=60), "v": 3}
        clock.advance(minutes=2)

        engine.reconcile_all()

        target = fake_target.rows("public:orders")
        assert target[(1,)]["v"] == 3
        assert target[(2,)]["v"] == 2


def test_engine_defaults(registry, cursor_store, retry_policy):
    engine = ReconciliationEngine(None, None, registry, cursor_store, retry_policy)

    assert engine.options.batch_size == 500
    assert isinstance(engine.shutdown_event, threading.Event)

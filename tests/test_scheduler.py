import threading
from datetime import datetime, timedelta

import pytest

from storesync.errors import StoreSyncError
from storesync.models import utcnow

from .conftest import product


def make_rule(services, **overrides):
    data = {"name": "rule", "source_store_id": "A", "target_store_id": "B", "type": "product"}
    data.update(overrides)
    return services.rules.create(data)


def test_run_now_accepts_then_runs(services, fake):
    fake.seed("A", "product", product(1))
    rule = make_rule(services)

    log = services.scheduler.run_now(rule.id)
    assert log.status == "pending"
    assert log.action == "manual"

    assert services.scheduler.drain(timeout=10)
    done = services.logs.get(log.id)
    assert done.status == "completed"
    assert done.details["stats"]["created"] == 1


def test_run_adhoc_has_no_rule_id(services, fake):
    fake.seed("A", "product", product(1, status="draft"), product(2))
    log = services.scheduler.run_adhoc("product", "A", "C", {"status": "active"}, None)
    services.scheduler.drain(timeout=10)
    done = services.logs.get(log.id)
    assert done.sync_rule_id is None
    assert done.details["stats"]["created"] == 1
    assert list(fake.records["C"]["product"].values())[0]["title"] == "Shirt"


def test_run_pass_covers_unscheduled_rules(services, fake):
    fake.seed("A", "product", product(1))
    to_b = make_rule(services)
    to_c = make_rule(services, target_store_id="C")
    make_rule(services, target_store_id="C", name="own schedule", schedule="*/5 * * * *")

    log_ids = services.scheduler.run_pass("product")
    services.scheduler.drain(timeout=10)

    assert len(log_ids) == 2
    logs = [services.logs.get(i) for i in log_ids]
    assert [l.sync_rule_id for l in logs] == [to_b.id, to_c.id]
    assert all(l.status == "completed" for l in logs)
    assert logs[0].finished_at <= logs[1].started_at


def test_run_pass_without_rules_is_noop(services):
    assert services.scheduler.run_pass("order") == []


def test_cron_tick_fires_rule_schedule(services, fake):
    fake.seed("A", "product", product(1))
    rule = make_rule(services, schedule="*/5 * * * *")
    base = datetime(2026, 1, 1, 0, 1)

    services.scheduler.tick(base)
    assert services.logs.search({})["pagination"]["total"] == 0

    services.scheduler.tick(base + timedelta(minutes=4))
    services.scheduler.drain(timeout=10)
    (log,) = services.logs.search({})["logs"]
    assert log["sync_rule_id"] == rule.id
    assert log["action"] == "sync"
    assert log["status"] == "completed"


def test_due_retry_is_dispatched_once(services, fake):
    fake.seed("A", "product", product(1))
    rule = make_rule(services)
    first = services.logs.accept("product", "A", "B", sync_rule_id=rule.id)
    retry = services.logs.fail(first.id, "upstream timeout")

    later = utcnow() + timedelta(hours=1)
    assert services.scheduler.dispatch_retries(later) == [retry.id]
    assert services.scheduler.dispatch_retries(later) == []
    services.scheduler.drain(timeout=10)
    assert services.logs.get(retry.id).status == "completed"


def test_retry_of_disabled_rule_is_dropped(services, fake):
    rule = make_rule(services)
    first = services.logs.accept("product", "A", "B", sync_rule_id=rule.id)
    retry = services.logs.fail(first.id, "boom")
    services.rules.set_active(rule.id, False)

    services.scheduler.dispatch_retries(utcnow() + timedelta(hours=1))

    row = services.logs.get(retry.id)
    assert row.status == "failed"
    assert "disabled" in row.error
    assert services.logs.search({"status": "pending"})["pagination"]["total"] == 0


def test_shutdown_interrupts_running_and_queued_work(services, fake):
    fake.seed("A", "product", product(1))
    rule = make_rule(services)
    entered = threading.Semaphore(0)
    gate = threading.Event()
    fetch = fake.fetch_records

    def blocking_fetch(store, kind, cursor=None):
        entered.release()
        gate.wait(5)
        return fetch(store, kind, cursor)

    fake.fetch_records = blocking_fetch
    logs = [services.scheduler.run_now(rule.id) for _ in range(3)]
    assert entered.acquire(timeout=5) and entered.acquire(timeout=5)

    services.scheduler.shutdown(wait_for_running=False)
    gate.set()
    services.scheduler.drain(timeout=10)

    rows = [services.logs.get(l.id) for l in logs]
    assert [r.status for r in rows] == ["failed", "failed", "failed"]
    assert all(r.error == "interrupted" for r in rows)
    assert fake.calls == []


def test_submit_after_shutdown_is_refused(services):
    rule = make_rule(services)
    services.scheduler.shutdown()
    with pytest.raises(StoreSyncError) as exc:
        services.scheduler.run_now(rule.id)
    assert exc.value.status_code == 503
    assert services.logs.search({"status": "failed"})["logs"][0]["error"] == "interrupted"

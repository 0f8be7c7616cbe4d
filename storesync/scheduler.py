"""
Scheduler for sync work.

Owns a bounded worker pool and a background tick thread. Every tick it:

* fires due cron jobs: one pass per rule type over the active rules that
  have no schedule of their own, one job per rule that does, and the
  log-retention sweep;
* claims retry rows whose delay has elapsed and runs them.

Manual runs and webhook reconciliations go through the same pool. Each
trigger gets its ``pending`` log row when it is accepted, before it waits
for a worker.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime

from croniter import croniter

from .adapters import WebhookEvent
from .config import SyncSettings
from .errors import NotFoundError, RunInterrupted, StoreSyncError
from .models import RULE_TYPES, SyncLog, SyncRule, utcnow
from .orchestrator import SyncOrchestrator
from .repositories import Store
from .rules import RuleRepository, transient_rule
from .sync_log import SyncLogTracker
from .utils.logger import debug, exception, info, warn


@dataclass
class CronJob:
    name: str
    expr: str
    fn: object
    next_at: datetime | None = None

    def due(self, now: datetime) -> bool:
        if self.next_at is None:
            self.next_at = croniter(self.expr, now).get_next(datetime)
        return self.next_at <= now

    def advance(self, now: datetime):
        self.next_at = croniter(self.expr, now).get_next(datetime)


@dataclass
class _Work:
    log_ids: list
    started: bool = False
    finalized: bool = False
    future: Future | None = field(default=None, repr=False)


class Scheduler:
    def __init__(self, rules: RuleRepository, orchestrator: SyncOrchestrator, logs: SyncLogTracker,
                 settings: SyncSettings | None = None):
        self.rules = rules
        self.orchestrator = orchestrator
        self.logs = logs
        self.settings = settings or SyncSettings()

        self._pool = ThreadPoolExecutor(max_workers=self.settings.max_concurrent_syncs,
                                        thread_name_prefix="storesync-sync")
        self._stop_event = threading.Event()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._work: list[_Work] = []
        self._closed = False

        cron = self.settings.cron
        self._jobs: dict[str, CronJob] = {
            f"{t}-pass": CronJob(f"{t}-pass", cron[t], lambda t=t: self.run_pass(t)) for t in RULE_TYPES
        }
        self._jobs["cleanup"] = CronJob("cleanup", cron["cleanup"], self.cleanup)

    # =========================================================
    # Lifecycle
    # =========================================================

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="storesync-scheduler", daemon=True)
        self._thread.start()
        info(f"[scheduler] started: pool={self.settings.max_concurrent_syncs} tick={self.settings.tick_seconds}s")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                exception(f"[scheduler] tick failed: {e}")
            self._stop_event.wait(timeout=self.settings.tick_seconds)

    def shutdown(self, wait_for_running: bool = True):
        """Stop ticking; in-flight runs end as interrupted, queued ones are finalised without running."""
        self._stop_event.set()
        self._cancel.set()
        with self._lock:
            self._closed = True
            pending = [w for w in self._work if not w.started and not w.finalized]
            for w in pending:
                w.finalized = True
        for w in pending:
            if w.future is not None:
                w.future.cancel()
            for log_id in w.log_ids:
                self._interrupt(log_id)
        self._pool.shutdown(wait=wait_for_running, cancel_futures=True)
        if self._thread is not None:
            self._thread.join(timeout=5)
        info(f"[scheduler] stopped ({len(pending)} queued work items interrupted)")

    def _interrupt(self, log_id: int):
        try:
            self.logs.fail(log_id, str(RunInterrupted()))
        except StoreSyncError as e:
            debug(f"[scheduler] log {log_id} already finalised: {e}")

    def drain(self, timeout: float | None = None) -> bool:
        """Block until every submitted work item has finished. True if all did."""
        with self._lock:
            futures = [w.future for w in self._work if w.future is not None]
        done, not_done = wait(futures, timeout=timeout)
        return not not_done

    # =========================================================
    # Ticking
    # =========================================================

    def _rule_jobs(self, now: datetime):
        wanted = {f"rule-{r.id}": r for r in self.rules.active() if r.schedule}
        for name in [n for n in self._jobs if n.startswith("rule-") and n not in wanted]:
            del self._jobs[name]
        for name, rule in wanted.items():
            job = self._jobs.get(name)
            if job is None or job.expr != rule.schedule:
                self._jobs[name] = CronJob(name, rule.schedule, lambda rid=rule.id: self.run_now(rid, action="sync"))

    def tick(self, now: datetime | None = None):
        now = now or utcnow()
        if self._stop_event.is_set():
            return
        self._rule_jobs(now)
        for job in list(self._jobs.values()):
            if job.due(now):
                job.advance(now)
                debug(f"[scheduler] firing {job.name}")
                try:
                    job.fn()
                except StoreSyncError as e:
                    warn(f"[scheduler] job {job.name}: {e}")
        self.dispatch_retries(now)
        with self._lock:
            self._work = [w for w in self._work if w.future is None or not w.future.done()]

    # =========================================================
    # Submitting work
    # =========================================================

    def _submit(self, log_ids: list, fn) -> Future:
        work = _Work(list(log_ids))

        def runner():
            with self._lock:
                if work.finalized:
                    return
                work.started = True
            try:
                fn()
            finally:
                work.finalized = True

        with self._lock:
            if self._closed:
                closed = True
            else:
                closed = False
                self._work.append(work)
        if closed:
            for log_id in log_ids:
                self._interrupt(log_id)
            raise StoreSyncError("scheduler is shut down", 503)
        work.future = self._pool.submit(runner)
        return work.future

    def _guarded(self, rule: SyncRule, log_id: int, entity_id=None):
        try:
            if entity_id is None:
                self.orchestrator.run(rule, log_id=log_id, cancel_event=self._cancel)
            else:
                self.orchestrator.reconcile(rule, entity_id, log_id=log_id, cancel_event=self._cancel)
        except RunInterrupted:
            pass
        except StoreSyncError as e:
            warn(f"[scheduler] rule {rule.id} log {log_id}: {e}")
        except Exception as e:
            exception(f"[scheduler] rule {rule.id} log {log_id} crashed: {e}")

    def run_pass(self, type: str) -> list[int]:
        """One work item running every unscheduled active rule of ``type`` in order."""
        rules = [r for r in self.rules.active(type) if not r.schedule]
        if not rules:
            return []
        logs = [self.logs.accept(r.type, r.source_store_id, r.target_store_id, sync_rule_id=r.id).id
                for r in rules]

        def sequence():
            for i, (rule, log_id) in enumerate(zip(rules, logs)):
                if i and self.settings.inter_rule_delay > 0:
                    self._cancel.wait(self.settings.inter_rule_delay)
                self._guarded(rule, log_id)

        self._submit(logs, sequence)
        info(f"[scheduler] {type} pass queued for {len(rules)} rule(s)")
        return logs

    def run_now(self, rule_id: int, action: str = "manual") -> SyncLog:
        rule = self.rules.get(rule_id)
        log = self.logs.accept(rule.type, rule.source_store_id, rule.target_store_id,
                               sync_rule_id=rule.id, action=action)
        self._submit([log.id], lambda: self._guarded(rule, log.id))
        return log

    def run_adhoc(self, type: str, source_store_id, target_store_id, conditions=None,
                  transformations=None) -> SyncLog:
        rule = transient_rule(type, source_store_id, target_store_id, conditions, transformations)
        for sid in (rule.source_store_id, rule.target_store_id):
            if self.orchestrator.stores.find_by_id(sid) is None:
                raise NotFoundError(f"store {sid} not found")
        log = self.logs.accept(rule.type, rule.source_store_id, rule.target_store_id, action="manual")
        self._submit([log.id], lambda: self._guarded(rule, log.id))
        return log

    def dispatch_webhook(self, store: Store, event: WebhookEvent) -> list[int]:
        if not event.entity_id:
            debug(f"[scheduler] {store.name} {event.topic}: no entity to reconcile")
            return []
        log_ids = []
        for kind in event.kinds:
            for rule in self.rules.active(kind, source_store_id=store.id):
                log = self.logs.accept(rule.type, rule.source_store_id, rule.target_store_id,
                                       sync_rule_id=rule.id, action="webhook", entity_type=kind,
                                       entity_id=event.entity_id)
                self._submit([log.id], lambda r=rule, lid=log.id: self._guarded(r, lid, event.entity_id))
                log_ids.append(log.id)
        if log_ids:
            info(f"[scheduler] {store.name} {event.topic} {event.entity_id}: {len(log_ids)} reconciliation(s) queued")
        return log_ids

    def dispatch_retries(self, now: datetime | None = None) -> list[int]:
        claimed = self.logs.claim_due_retries(now)
        for row in claimed:
            rule = self._rule_for_retry(row)
            if rule is None:
                continue
            self._submit([row.id], lambda r=rule, lid=row.id, eid=row.entity_id: self._guarded(r, lid, eid))
            info(f"[scheduler] retry {row.retry_count} of log {row.retry_of_id} queued as log {row.id}")
        return [r.id for r in claimed]

    def _rule_for_retry(self, row: SyncLog) -> SyncRule | None:
        if row.sync_rule_id is None:
            return transient_rule(row.type, row.source_store_id, row.target_store_id)
        try:
            rule = self.rules.get(row.sync_rule_id)
        except NotFoundError:
            self.logs.fail(row.id, f"sync rule {row.sync_rule_id} no longer exists", retry=False)
            return None
        if not rule.is_active:
            self.logs.fail(row.id, f"sync rule {rule.id} is disabled", retry=False)
            return None
        return rule

    def cleanup(self) -> int:
        return self.logs.purge_older_than(self.settings.log_retention_days)

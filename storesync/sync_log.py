"""
Sync log state tracker.

One row per attempt, moving strictly forward:

    pending -> in_progress -> completed | failed

Rows are written the moment a trigger is accepted, so a crash mid-run still
leaves a trace. Completed and failed rows are never modified again; a retry
is a new ``pending`` row pointing back at the failed one through
``retry_of_id``, carrying ``retry_count + 1`` and a ``next_retry_at``.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import sessionmaker

from .config import SyncSettings
from .errors import NotFoundError, SyncError, ValidationError
from .models import COMPLETED, FAILED, IN_PROGRESS, PENDING, SyncLog, utcnow
from .utils.logger import info, warn

TIME_RANGES = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}
MAX_PAGE_SIZE = 200


class SyncLogTracker:
    def __init__(self, session_factory: sessionmaker, settings: SyncSettings | None = None):
        self._sessions = session_factory
        self.settings = settings or SyncSettings()

    # =========================================================
    # Transitions
    # =========================================================

    def accept(self, type: str, source_store_id, target_store_id, sync_rule_id: int | None = None,
               action: str = "sync", entity_type: str | None = None, entity_id=None,
               details: dict | None = None) -> SyncLog:
        with self._sessions() as s:
            row = SyncLog(
                sync_rule_id=sync_rule_id,
                source_store_id=str(source_store_id),
                target_store_id=str(target_store_id),
                type=type,
                status=PENDING,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                details=details or {},
                retry_count=0,
            )
            s.add(row)
            s.commit()
            return row

    def _transition(self, log_id: int, allowed: tuple, **changes) -> SyncLog:
        with self._sessions() as s:
            row = s.get(SyncLog, log_id)
            if row is None:
                raise NotFoundError(f"sync log {log_id} not found")
            if row.status not in allowed:
                raise SyncError(f"sync log {log_id} is {row.status}; cannot move to {changes.get('status')}")
            for k, v in changes.items():
                setattr(row, k, v)
            s.commit()
            return row

    def start(self, log_id: int) -> SyncLog:
        return self._transition(log_id, (PENDING,), status=IN_PROGRESS, started_at=utcnow())

    def complete(self, log_id: int, stats: dict, details: dict | None = None,
                 external_source_id=None, external_target_id=None) -> SyncLog:
        merged = {**(details or {}), "stats": dict(stats)}
        extra = {}
        if external_source_id is not None:
            extra["external_source_id"] = str(external_source_id)
        if external_target_id is not None:
            extra["external_target_id"] = str(external_target_id)
        return self._transition(log_id, (PENDING, IN_PROGRESS), status=COMPLETED, details=merged,
                                finished_at=utcnow(), **extra)

    def fail(self, log_id: int, error: str, details: dict | None = None, retry: bool = True) -> SyncLog | None:
        """Mark a run failed; returns the scheduled retry row when one was created."""
        row = self._transition(log_id, (PENDING, IN_PROGRESS), status=FAILED, error=str(error)[:4000],
                               details=details or {}, finished_at=utcnow())
        return self._schedule_retry(row) if retry else None

    def _schedule_retry(self, failed: SyncLog) -> SyncLog | None:
        st = self.settings
        if not st.retry_failed_sync:
            return None
        if failed.retry_count >= st.max_retry_attempts:
            warn(f"[log {failed.id}] giving up after {failed.retry_count} retries")
            return None

        with self._sessions() as s:
            retry = SyncLog(
                sync_rule_id=failed.sync_rule_id,
                source_store_id=failed.source_store_id,
                target_store_id=failed.target_store_id,
                type=failed.type,
                status=PENDING,
                action=failed.action,
                entity_type=failed.entity_type,
                entity_id=failed.entity_id,
                details={},
                retry_count=failed.retry_count + 1,
                retry_of_id=failed.id,
                next_retry_at=utcnow() + timedelta(seconds=st.retry_delay),
            )
            s.add(retry)
            s.commit()
        info(f"[log {failed.id}] retry {retry.retry_count}/{st.max_retry_attempts} as log {retry.id} "
             f"at {retry.next_retry_at:%H:%M:%S}")
        return retry

    def claim_due_retries(self, now: datetime | None = None) -> list[SyncLog]:
        """Hand out pending retry rows whose time has come. Each row is claimed once."""
        now = now or utcnow()
        with self._sessions() as s:
            due = s.execute(
                select(SyncLog.id).where(
                    SyncLog.status == PENDING,
                    SyncLog.next_retry_at.is_not(None),
                    SyncLog.next_retry_at <= now,
                ).order_by(SyncLog.next_retry_at)
            ).scalars().all()

            claimed = []
            for log_id in due:
                res = s.execute(
                    update(SyncLog)
                    .where(SyncLog.id == log_id, SyncLog.status == PENDING, SyncLog.next_retry_at.is_not(None))
                    .values(next_retry_at=None)
                )
                if res.rowcount == 1:
                    claimed.append(log_id)
            s.commit()
            if not claimed:
                return []
            return list(s.execute(select(SyncLog).where(SyncLog.id.in_(claimed)).order_by(SyncLog.id)).scalars())

    def purge_older_than(self, days: int, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - timedelta(days=days)
        with self._sessions() as s:
            n = s.execute(delete(SyncLog).where(SyncLog.created_at < cutoff)).rowcount
            s.commit()
        info(f"[logs] purged {n or 0} rows older than {days} days")
        return n or 0

    # =========================================================
    # Reads
    # =========================================================

    def get(self, log_id: int) -> SyncLog:
        with self._sessions() as s:
            row = s.get(SyncLog, log_id)
        if row is None:
            raise NotFoundError(f"sync log {log_id} not found")
        return row

    def search(self, filters: dict | None = None, page: int = 1, limit: int = 20) -> dict:
        filters = filters or {}
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))

        conds = []
        for key in ("status", "type", "action", "source_store_id", "target_store_id", "entity_id"):
            if filters.get(key):
                conds.append(getattr(SyncLog, key) == str(filters[key]))
        if filters.get("sync_rule_id") not in (None, ""):
            conds.append(SyncLog.sync_rule_id == int(filters["sync_rule_id"]))
        if filters.get("since"):
            conds.append(SyncLog.created_at >= filters["since"])
        if filters.get("until"):
            conds.append(SyncLog.created_at <= filters["until"])

        with self._sessions() as s:
            total = s.execute(select(func.count()).select_from(SyncLog).where(*conds)).scalar_one()
            rows = s.execute(
                select(SyncLog).where(*conds)
                .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
                .offset((page - 1) * limit).limit(limit)
            ).scalars().all()
        return {
            "logs": [r.to_dict() for r in rows],
            "pagination": {"total": total, "page": page, "limit": limit, "pages": (total + limit - 1) // limit},
        }

    def summary(self, time_range: str = "7d", now: datetime | None = None) -> dict:
        if time_range not in TIME_RANGES:
            raise ValidationError(f"time range must be one of {', '.join(TIME_RANGES)}")
        since = (now or utcnow()) - timedelta(days=TIME_RANGES[time_range])

        with self._sessions() as s:
            rules = s.execute(
                select(
                    SyncLog.sync_rule_id,
                    func.count(SyncLog.id),
                    func.sum(case((SyncLog.status == COMPLETED, 1), else_=0)),
                    func.sum(case((SyncLog.status == FAILED, 1), else_=0)),
                )
                .where(SyncLog.created_at >= since)
                .group_by(SyncLog.sync_rule_id)
                .order_by(func.count(SyncLog.id).desc())
            ).all()
            types = s.execute(
                select(SyncLog.type, SyncLog.status, func.count(SyncLog.id),
                       func.min(SyncLog.created_at), func.max(SyncLog.created_at))
                .where(SyncLog.created_at >= since)
                .group_by(SyncLog.type, SyncLog.status)
                .order_by(SyncLog.type, SyncLog.status)
            ).all()
            recent = s.execute(
                select(SyncLog).where(SyncLog.created_at >= since)
                .order_by(SyncLog.created_at.desc(), SyncLog.id.desc()).limit(10)
            ).scalars().all()

        return {
            "time_range": time_range,
            "since": since.isoformat(),
            "rules": [
                {"sync_rule_id": rid, "total": total, "completed": int(done or 0), "failed": int(failed or 0)}
                for rid, total, done, failed in rules
            ],
            "types": [
                {"type": t, "status": st, "count": n,
                 "first_sync": first.isoformat() if first else None,
                 "last_sync": last.isoformat() if last else None}
                for t, st, n, first, last in types
            ],
            "recent": [r.to_dict() for r in recent],
        }

# storesync/mappings.py
import threading
from contextlib import contextmanager

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import SyncError
from .models import OrderMapping, ProductMapping, utcnow
from .utils.logger import debug

# inventory rows correlate through their product's mapping
MODELS = {"product": ProductMapping, "inventory": ProductMapping, "order": OrderMapping}


def _model(kind: str):
    try:
        return MODELS[kind]
    except KeyError:
        raise SyncError(f"no mapping table for kind '{kind}'")


class MappingStore:
    """
    Durable source id -> target id correlation, one row per
    (source store, source entity, target store).

    Writers for one key are serialised by ``lock``; the unique constraint
    covers other processes, and an insert that loses that race is replayed
    as an update.
    """

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory
        self._locks: dict[tuple, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================
    # Locks
    # =========================================================

    def _lock_for(self, kind: str, source_store_id, target_store_id, source_entity_id) -> threading.Lock:
        k = (_model(kind).__tablename__, str(source_store_id), str(source_entity_id), str(target_store_id))
        with self._locks_guard:
            if k not in self._locks:
                self._locks[k] = threading.Lock()
            return self._locks[k]

    @contextmanager
    def lock(self, kind: str, source_store_id, target_store_id, source_entity_id):
        lock = self._lock_for(kind, source_store_id, target_store_id, source_entity_id)
        with lock:
            yield

    # =========================================================
    # Reads
    # =========================================================

    def _find(self, session, kind, source_store_id, target_store_id, source_entity_id):
        model = _model(kind)
        stmt = select(model).where(
            model.source_store_id == str(source_store_id),
            model.target_store_id == str(target_store_id),
            model.source_entity_id == str(source_entity_id),
        )
        return session.execute(stmt).scalar_one_or_none()

    def get(self, kind: str, source_store_id, target_store_id, source_entity_id):
        with self._sessions() as s:
            return self._find(s, kind, source_store_id, target_store_id, source_entity_id)

    def resolve(self, kind: str, source_store_id, target_store_id, source_entity_id) -> str | None:
        row = self.get(kind, source_store_id, target_store_id, source_entity_id)
        return row.target_entity_id if row else None

    def count(self, kind: str, source_store_id=None, target_store_id=None) -> int:
        model = _model(kind)
        stmt = select(func.count()).select_from(model)
        if source_store_id is not None:
            stmt = stmt.where(model.source_store_id == str(source_store_id))
        if target_store_id is not None:
            stmt = stmt.where(model.target_store_id == str(target_store_id))
        with self._sessions() as s:
            return s.execute(stmt).scalar_one()

    # =========================================================
    # Writes
    # =========================================================

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type(IntegrityError),
    )
    def upsert(self, kind: str, source_store_id, target_store_id, source_entity_id, target_entity_id,
               sync_rule_id=None):
        with self._sessions() as s:
            row = self._find(s, kind, source_store_id, target_store_id, source_entity_id)
            if row is None:
                row = _model(kind)(
                    source_store_id=str(source_store_id),
                    target_store_id=str(target_store_id),
                    source_entity_id=str(source_entity_id),
                    target_entity_id=str(target_entity_id),
                    sync_rule_id=sync_rule_id,
                )
                s.add(row)
            else:
                row.target_entity_id = str(target_entity_id)
                if sync_rule_id is not None:
                    row.sync_rule_id = sync_rule_id
                row.updated_at = utcnow()
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                debug(f"[mapping] insert race on {kind} {source_store_id}:{source_entity_id} -> {target_store_id}")
                raise
            return row

    def remember_variants(self, source_store_id, target_store_id, source_product_id, pairs: dict) -> dict:
        """Merge source variant id -> target variant id pairs into a product mapping."""
        with self._sessions() as s:
            row = self._find(s, "product", source_store_id, target_store_id, source_product_id)
            if row is None:
                raise SyncError(f"no product mapping for {source_store_id}:{source_product_id} -> {target_store_id}")
            merged = dict(row.variant_map or {})
            merged.update({str(k): str(v) for k, v in pairs.items() if k and v})
            row.variant_map = merged
            row.updated_at = utcnow()
            s.commit()
            return merged

    def purge(self, kind: str, source_store_id=None, target_store_id=None) -> int:
        model = _model(kind)
        stmt = delete(model)
        if source_store_id is not None:
            stmt = stmt.where(model.source_store_id == str(source_store_id))
        if target_store_id is not None:
            stmt = stmt.where(model.target_store_id == str(target_store_id))
        with self._sessions() as s:
            n = s.execute(stmt).rowcount
            s.commit()
            return n or 0

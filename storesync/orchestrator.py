"""
Sync orchestrator.

Runs one rule end to end (``run``) or one entity through a rule
(``reconcile``). Both share the same per-record pipeline:

    to_internal -> matches -> transform -> resolve mapping
        -> update_record | create_record + upsert mapping

Inventory records never create anything: they are pushed onto the target
copy of an already-mapped product, or skipped. Per-record failures are
counted and the batch moves on; anything else fails the whole run and its
log row.
"""

import threading
import time
from dataclasses import asdict, dataclass, field

from .adapters import MarketplaceAdapter, get_adapter
from .adapters.base import as_int
from .errors import RunInterrupted, StoreSyncError, SyncError, ValidationError
from .mappings import MappingStore
from .matcher import matches
from .models import SyncRule
from .repositories import EntityRepository, NullEntityRepository, Store, StoreRepository
from .rules import validate_rule
from .sync_log import SyncLogTracker
from .transform import transform
from .utils.logger import debug, error, info, warn

MAX_ERRORS = 20


@dataclass
class RunStats:
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Run:
    rule: SyncRule
    source: Store
    target: Store
    src: MarketplaceAdapter
    tgt: MarketplaceAdapter
    stats: RunStats = field(default_factory=RunStats)
    failed_ids: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def tag(self) -> str:
        return f"[{self.source.name} ➝ {self.target.name}]"

    def details(self, started: float) -> dict:
        return {
            "stats": self.stats.as_dict(),
            "failedIds": self.failed_ids,
            "errors": self.errors,
            "timings": {"seconds": round(time.monotonic() - started, 3)},
        }


def _check_cancel(cancel_event: threading.Event | None):
    if cancel_event is not None and cancel_event.is_set():
        raise RunInterrupted()


class SyncOrchestrator:
    def __init__(self, stores: StoreRepository, mappings: MappingStore, logs: SyncLogTracker,
                 entities: EntityRepository | None = None, adapters=get_adapter):
        self.stores = stores
        self.mappings = mappings
        self.logs = logs
        self.entities = entities or NullEntityRepository()
        self._adapter = adapters

    # =========================================================
    # Entry points
    # =========================================================

    def run(self, rule: SyncRule, log_id: int | None = None, cancel_event: threading.Event | None = None,
            action: str = "sync") -> RunStats:
        if log_id is None:
            log_id = self.logs.accept(rule.type, rule.source_store_id, rule.target_store_id,
                                      sync_rule_id=rule.id, action=action).id

        def body(ctx: _Run):
            cursor = None
            while True:
                _check_cancel(cancel_event)
                page = ctx.src.fetch_records(ctx.source, rule.type, cursor)
                for raw in page.records:
                    _check_cancel(cancel_event)
                    self._process(ctx, raw)
                if not page.has_more or not page.next_cursor:
                    break
                cursor = page.next_cursor
            return {}

        return self._execute(rule, log_id, body)

    def reconcile(self, rule: SyncRule, entity_id, log_id: int | None = None,
                  cancel_event: threading.Event | None = None) -> RunStats:
        """Propagate one source entity through ``rule``, e.g. after a webhook."""
        if log_id is None:
            log_id = self.logs.accept(rule.type, rule.source_store_id, rule.target_store_id,
                                      sync_rule_id=rule.id, action="webhook", entity_type=rule.type,
                                      entity_id=entity_id).id

        def body(ctx: _Run):
            raws = ctx.src.fetch_entity(ctx.source, rule.type, str(entity_id))
            if not raws:
                info(f"{ctx.tag} {rule.type} {entity_id} no longer exists on source, nothing to do")
            for raw in raws:
                _check_cancel(cancel_event)
                self._process(ctx, raw, refresh_local=True)
            kind = "product" if rule.type == "inventory" else rule.type
            return {
                "external_source_id": entity_id,
                "external_target_id": self.mappings.resolve(kind, ctx.source.id, ctx.target.id, entity_id),
            }

        return self._execute(rule, log_id, body)

    # =========================================================
    # Run lifecycle
    # =========================================================

    def _execute(self, rule: SyncRule, log_id: int, body) -> RunStats:
        started = time.monotonic()
        ctx = None
        try:
            validate_rule(rule.to_dict())
            source = self.stores.require(rule.source_store_id)
            target = self.stores.require(rule.target_store_id)
            ctx = _Run(rule, source, target, self._adapter(source.type), self._adapter(target.type))
        except StoreSyncError as e:
            error(f"[rule {rule.id}] cannot start: {e}")
            self.logs.fail(log_id, str(e), retry=not isinstance(e, ValidationError))
            raise

        self.logs.start(log_id)
        info(f"{ctx.tag} {rule.type} run started (rule {rule.id}, log {log_id})")
        try:
            extra = body(ctx) or {}
        except RunInterrupted as e:
            warn(f"{ctx.tag} run interrupted after {ctx.stats.total} records (log {log_id})")
            self.logs.fail(log_id, str(e), ctx.details(started))
            raise
        except Exception as e:
            error(f"{ctx.tag} run failed (log {log_id}): {e}")
            self.logs.fail(log_id, str(e), ctx.details(started))
            raise

        self.logs.complete(log_id, ctx.stats.as_dict(), ctx.details(started), **extra)
        s = ctx.stats
        info(f"{ctx.tag} {rule.type} run done (log {log_id}): total={s.total} created={s.created} "
             f"updated={s.updated} skipped={s.skipped} failed={s.failed}")
        return ctx.stats

    # =========================================================
    # Per-record pipeline
    # =========================================================

    def _process(self, ctx: _Run, raw: dict, refresh_local: bool = False):
        kind = ctx.rule.type
        record = ctx.src.to_internal(raw, kind)
        ctx.stats.total += 1

        try:
            if refresh_local:
                # the local copy follows the source whether or not the rule matches
                self.entities.upsert(ctx.source.id, kind, record)
            if not matches(record, ctx.rule.conditions):
                outcome = "skipped"
            elif kind == "inventory":
                outcome = self._push_inventory(ctx, record)
            else:
                outcome = self._propagate(ctx, record)
        except SyncError:
            raise
        except Exception as e:
            ctx.stats.failed += 1
            ctx.failed_ids.append(record.get("id"))
            if len(ctx.errors) < MAX_ERRORS:
                ctx.errors.append(f"{record.get('id')}: {e}")
            warn(f"{ctx.tag} {kind} {record.get('id')} failed: {e}")
            return

        setattr(ctx.stats, outcome, getattr(ctx.stats, outcome) + 1)

    def _propagate(self, ctx: _Run, record: dict) -> str:
        kind = ctx.rule.type
        entity_id = record.get("id")
        if not entity_id:
            raise StoreSyncError(f"{kind} record has no id")

        out = transform(record, ctx.rule.transformations)
        if kind == "order":
            out = self._remap_line_items(ctx, out)

        with self.mappings.lock(kind, ctx.source.id, ctx.target.id, entity_id):
            target_id = self.mappings.resolve(kind, ctx.source.id, ctx.target.id, entity_id)
            if target_id:
                ctx.tgt.update_record(ctx.target, kind, target_id, out)
                self.mappings.upsert(kind, ctx.source.id, ctx.target.id, entity_id, target_id, ctx.rule.id)
                debug(f"{ctx.tag} updated {kind} {entity_id} -> {target_id}")
                return "updated"

            target_id = ctx.tgt.create_record(ctx.target, kind, out)
            self.mappings.upsert(kind, ctx.source.id, ctx.target.id, entity_id, target_id, ctx.rule.id)
            info(f"{ctx.tag} created {kind} {entity_id} -> {target_id}")
            return "created"

    def _push_inventory(self, ctx: _Run, record: dict) -> str:
        product_id = record.get("product_id")
        if not product_id:
            return "skipped"

        with self.mappings.lock("product", ctx.source.id, ctx.target.id, product_id):
            mapping = self.mappings.get("product", ctx.source.id, ctx.target.id, product_id)
            if mapping is None:
                debug(f"{ctx.tag} inventory {record.get('id')} skipped, product {product_id} not mapped")
                return "skipped"

            out = transform(record, ctx.rule.transformations)
            source_variant = record.get("variant_id")
            target_variant = (mapping.variant_map or {}).get(str(source_variant)) if source_variant else None

            if source_variant and not target_variant:
                by_sku = ctx.tgt.variant_ids_by_sku(ctx.target, mapping.target_entity_id)
                sku = record.get("sku")
                if sku and sku in by_sku:
                    target_variant = by_sku[sku]
                elif len(by_sku) == 1:
                    target_variant = next(iter(by_sku.values()))
                if not target_variant:
                    warn(f"{ctx.tag} inventory {record.get('id')} skipped, no target variant for "
                         f"sku '{sku}' on product {mapping.target_entity_id}")
                    return "skipped"
                self.mappings.remember_variants(ctx.source.id, ctx.target.id, product_id,
                                                {source_variant: target_variant})

            ctx.tgt.push_inventory(ctx.target, mapping.target_entity_id, target_variant, as_int(out.get("quantity")))
            return "updated"

    def _remap_line_items(self, ctx: _Run, order: dict) -> dict:
        for li in order.get("line_items") or []:
            if not isinstance(li, dict) or not li.get("product_id"):
                continue
            mapping = self.mappings.get("product", ctx.source.id, ctx.target.id, li["product_id"])
            if mapping is None:
                continue
            li["product_id"] = mapping.target_entity_id
            vid = li.get("variant_id")
            li["variant_id"] = (mapping.variant_map or {}).get(str(vid)) if vid else None
        return order

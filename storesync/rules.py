# storesync/rules.py
from __future__ import annotations

from croniter import croniter
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .errors import NotFoundError, ValidationError
from .matcher import validate_predicate_spec
from .models import RULE_TYPES, SyncRule, utcnow
from .repositories import StoreRepository
from .transform import validate_transform_spec
from .utils.logger import info

EDITABLE = ("name", "source_store_id", "target_store_id", "type", "conditions", "transformations",
            "is_active", "schedule")


def validate_rule(data: dict, stores: StoreRepository | None = None) -> dict:
    """Check a rule body and return the normalised fields. Raises ValidationError."""
    for key in ("name", "source_store_id", "target_store_id", "type"):
        if data.get(key) in (None, ""):
            raise ValidationError(f"{key} is required")
    if data["type"] not in RULE_TYPES:
        raise ValidationError(f"type must be one of {', '.join(RULE_TYPES)}")

    source, target = str(data["source_store_id"]), str(data["target_store_id"])
    if source == target:
        raise ValidationError("source and target store must differ")
    if stores is not None:
        for sid in (source, target):
            if stores.find_by_id(sid) is None:
                raise ValidationError(f"store {sid} not found")

    schedule = (data.get("schedule") or "").strip() or None
    if schedule and not croniter.is_valid(schedule):
        raise ValidationError(f"schedule '{schedule}' is not a valid cron expression")

    return {
        "name": str(data["name"]).strip(),
        "source_store_id": source,
        "target_store_id": target,
        "type": data["type"],
        "conditions": validate_predicate_spec(data.get("conditions")),
        "transformations": validate_transform_spec(data.get("transformations")),
        "is_active": bool(data.get("is_active", True)),
        "schedule": schedule,
    }


def transient_rule(type: str, source_store_id, target_store_id, conditions=None, transformations=None) -> SyncRule:
    """An unsaved rule for ad-hoc manual runs; its logs carry no rule id."""
    fields = validate_rule({
        "name": f"manual {type} {source_store_id} -> {target_store_id}",
        "source_store_id": source_store_id,
        "target_store_id": target_store_id,
        "type": type,
        "conditions": conditions,
        "transformations": transformations,
    })
    return SyncRule(id=None, **fields)


class RuleRepository:
    def __init__(self, session_factory: sessionmaker, stores: StoreRepository | None = None):
        self._sessions = session_factory
        self.stores = stores

    def get(self, rule_id: int) -> SyncRule:
        with self._sessions() as s:
            rule = s.get(SyncRule, int(rule_id))
        if rule is None:
            raise NotFoundError(f"sync rule {rule_id} not found")
        return rule

    def list(self, type: str | None = None, active: bool | None = None, store_id=None) -> list[SyncRule]:
        stmt = select(SyncRule).order_by(SyncRule.id)
        if type:
            stmt = stmt.where(SyncRule.type == type)
        if active is not None:
            stmt = stmt.where(SyncRule.is_active == active)
        if store_id is not None:
            sid = str(store_id)
            stmt = stmt.where((SyncRule.source_store_id == sid) | (SyncRule.target_store_id == sid))
        with self._sessions() as s:
            return list(s.execute(stmt).scalars())

    def active(self, type: str | None = None, source_store_id=None) -> list[SyncRule]:
        rules = self.list(type=type, active=True)
        if source_store_id is not None:
            rules = [r for r in rules if r.source_store_id == str(source_store_id)]
        return rules

    def create(self, data: dict) -> SyncRule:
        fields = validate_rule(data, self.stores)
        with self._sessions() as s:
            rule = SyncRule(**fields)
            s.add(rule)
            s.commit()
        info(f"[rules] created rule {rule.id} '{rule.name}' ({rule.type} {rule.source_store_id} ➝ {rule.target_store_id})")
        return rule

    def update(self, rule_id: int, data: dict) -> SyncRule:
        with self._sessions() as s:
            rule = s.get(SyncRule, int(rule_id))
            if rule is None:
                raise NotFoundError(f"sync rule {rule_id} not found")
            merged = {k: getattr(rule, k) for k in EDITABLE}
            merged.update({k: v for k, v in data.items() if k in EDITABLE})
            for k, v in validate_rule(merged, self.stores).items():
                setattr(rule, k, v)
            rule.updated_at = utcnow()
            s.commit()
        return rule

    def set_active(self, rule_id: int, active: bool) -> SyncRule:
        with self._sessions() as s:
            rule = s.get(SyncRule, int(rule_id))
            if rule is None:
                raise NotFoundError(f"sync rule {rule_id} not found")
            rule.is_active = bool(active)
            rule.updated_at = utcnow()
            s.commit()
        info(f"[rules] rule {rule_id} {'enabled' if active else 'disabled'}")
        return rule

    def delete(self, rule_id: int) -> None:
        with self._sessions() as s:
            rule = s.get(SyncRule, int(rule_id))
            if rule is None:
                raise NotFoundError(f"sync rule {rule_id} not found")
            s.delete(rule)
            s.commit()
        info(f"[rules] deleted rule {rule_id}")

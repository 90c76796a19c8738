"""
Policy Registry — versioned, pinnable rule sets.

Holds every known PolicyVersion, a pointer to the current one and an optional
pinned override. Callers get deep-copied snapshots, never live objects, so a
pipeline run is isolated from CRUD edits that land while it executes. CRUD
always targets the *current* version and recomputes its signature.

The orchestrator receives a registry explicitly; ``get_policy_registry()``
is only the process-wide default used by the HTTP layer.
"""
from __future__ import annotations

import hashlib
import json
import math
import threading
import time
from functools import lru_cache
from typing import Any, Callable, Optional

import structlog

from stop_engine.core.config import get_settings
from stop_engine.core.exceptions import (
    InvalidRuleError,
    PolicyVersionNotFoundError,
    RuleNotFoundError,
)
from stop_engine.core.prng import PRNG
from stop_engine.policy.defaults import DEFAULT_VERSIONS, sample_rules
from stop_engine.rules.dsl import validate_rule
from stop_engine.schemas.policy import PolicyVersion, Rule

logger = structlog.get_logger()

_DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_signature(rules: list[Rule]) -> str:
    """
    Content hash of a rule set.

    Only id, type, priority, condition and action take part; label, enabled,
    expiry and compiled DSL are left out so identical rule content always
    hashes identically.
    """
    payload = [
        {
            "id": r.id,
            "type": r.type.value,
            "priority": r.priority,
            "condition": r.condition.model_dump(mode="json", by_alias=True, exclude_none=True),
            "action": r.action.model_dump(mode="json", exclude_none=True),
        }
        for r in rules
    ]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_default_versions(now_ms: int) -> list[PolicyVersion]:
    rules = sample_rules()
    versions = []
    for version, days_ago, count, description, cached in DEFAULT_VERSIONS:
        subset = [r.model_copy(deep=True) for r in rules[:count]]
        versions.append(PolicyVersion(
            version=version,
            effective_date=now_ms - days_ago * _DAY_MS,
            signature_hash=compute_signature(subset),
            rules=subset,
            description=description,
            is_cached=cached,
        ))
    return versions


class PolicyRegistry:

    def __init__(
        self,
        versions: Optional[list[PolicyVersion]] = None,
        current_version: Optional[str] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._lock = threading.RLock()
        self._clock = clock or _now_ms
        self._baseline = ([v.model_copy(deep=True) for v in versions] if versions is not None else None, current_version)
        self._versions: list[PolicyVersion] = []
        self._current_version = ""
        self._pinned_version: Optional[str] = None
        self.last_fetched_at = 0
        self._load(versions, current_version)

    def _load(self, versions: Optional[list[PolicyVersion]], current_version: Optional[str]) -> None:
        if versions is None:
            versions = build_default_versions(self._clock())
            current_version = current_version or get_settings().default_policy_version
        self._versions = [v.model_copy(deep=True) for v in versions]
        self._current_version = current_version or (self._versions[-1].version if self._versions else "")
        self._pinned_version = None
        self.last_fetched_at = self._clock()

    # ── Reads ──

    @property
    def current_version(self) -> str:
        return self._current_version

    @property
    def pinned_version(self) -> Optional[str]:
        return self._pinned_version

    @property
    def is_pinned(self) -> bool:
        return self._pinned_version is not None

    def get_active_policy(self) -> PolicyVersion:
        with self._lock:
            target = self._pinned_version or self._current_version
            return self._find(target).model_copy(deep=True)

    def get_all_versions(self) -> list[PolicyVersion]:
        with self._lock:
            return [v.model_copy(deep=True) for v in self._versions]

    def _find(self, version: str) -> PolicyVersion:
        for v in self._versions:
            if v.version == version:
                return v
        raise PolicyVersionNotFoundError(f"Policy version {version} not found")

    def _current(self) -> PolicyVersion:
        return self._find(self._current_version)

    # ── Pinning / cache ──

    def pin_policy_version(self, version: Optional[str]) -> None:
        with self._lock:
            if version is None:
                self._pinned_version = None
                logger.info("policy_unpinned")
                return
            if not any(v.version == version for v in self._versions):
                raise PolicyVersionNotFoundError(f"Cannot pin unknown version: {version}")
            self._pinned_version = version
            logger.info("policy_pinned", version=version)

    def update_policy_cache(self, version: str, is_cached: bool) -> None:
        with self._lock:
            self._find(version).is_cached = is_cached

    # ── Rule CRUD (current version) ──

    def add_rule(self, rule: Rule) -> PolicyVersion:
        self._require_valid(rule)
        with self._lock:
            policy = self._current()
            if any(r.id == rule.id for r in policy.rules):
                raise InvalidRuleError(f"Rule {rule.id} already exists in {policy.version}")
            policy.rules.append(rule.model_copy(deep=True))
            self._resign(policy)
            logger.info("policy_rule_added", version=policy.version, rule_id=rule.id)
            return policy.model_copy(deep=True)

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> PolicyVersion:
        with self._lock:
            policy = self._current()
            index = self._index_of(policy, rule_id)
            merged = {**policy.rules[index].model_dump(by_alias=True), **updates}
            if {"condition", "action"} & updates.keys() and "compiled_dsl" not in updates:
                # a stale precompiled string would explain the old rule
                merged["compiled_dsl"] = None
            updated = Rule.model_validate(merged)
            self._require_valid(updated)
            if updated.id != rule_id and any(r.id == updated.id for r in policy.rules):
                raise InvalidRuleError(f"Rule {updated.id} already exists in {policy.version}")
            policy.rules[index] = updated
            self._resign(policy)
            logger.info("policy_rule_updated", version=policy.version, rule_id=rule_id, fields=sorted(updates))
            return policy.model_copy(deep=True)

    def remove_rule(self, rule_id: str) -> PolicyVersion:
        with self._lock:
            policy = self._current()
            index = self._index_of(policy, rule_id)
            del policy.rules[index]
            self._resign(policy)
            logger.info("policy_rule_removed", version=policy.version, rule_id=rule_id)
            return policy.model_copy(deep=True)

    def reorder_rules(self, rule_ids: list[str]) -> PolicyVersion:
        """Priorities become 1..n in the given order; unlisted rules follow in their existing order."""
        with self._lock:
            policy = self._current()
            by_id = {r.id: r for r in policy.rules}
            reordered: list[Rule] = []
            placed: set[str] = set()
            for rule_id in rule_ids:
                rule = by_id.get(rule_id)
                if rule is not None and rule_id not in placed:
                    placed.add(rule_id)
                    reordered.append(rule.model_copy(update={"priority": len(reordered) + 1}))
            for rule in policy.rules:
                if rule.id not in placed:
                    reordered.append(rule.model_copy(update={"priority": len(reordered) + 1}))
            policy.rules = reordered
            self._resign(policy)
            logger.info("policy_rules_reordered", version=policy.version, order=[r.id for r in reordered])
            return policy.model_copy(deep=True)

    @staticmethod
    def _index_of(policy: PolicyVersion, rule_id: str) -> int:
        for i, r in enumerate(policy.rules):
            if r.id == rule_id:
                return i
        raise RuleNotFoundError(f"Rule {rule_id} not found in policy {policy.version}")

    @staticmethod
    def _require_valid(rule: Rule) -> None:
        validation = validate_rule(rule)
        if not validation.valid:
            raise InvalidRuleError(f"Rule {rule.id or '<unnamed>'} is invalid", validation.errors)

    @staticmethod
    def _resign(policy: PolicyVersion) -> None:
        policy.signature_hash = compute_signature(policy.rules)

    # ── Fetch simulation ──

    def simulate_policy_fetch(self, is_cached: bool, latency_range: tuple[int, int], prng: PRNG) -> int:
        """Simulated registry round-trip; cache hits land in the fastest 30% of the range."""
        low, high = latency_range
        span = (high - low) * 0.3 if is_cached else (high - low)
        latency = math.floor(low + prng.random() * span + 0.5)
        with self._lock:
            self.last_fetched_at = self._clock()
        return latency

    def reset(self) -> None:
        """Back to the seeded baseline, or to the versions this registry was built with."""
        with self._lock:
            self._load(*self._baseline)
            logger.info("policy_registry_reset", current_version=self._current_version)


@lru_cache
def get_policy_registry() -> PolicyRegistry:
    return PolicyRegistry()

"""
Counter/rollup engine for Chronos.

Evaluates conditional counter rules on create and update events and keeps the
counter store's totals and rollups current.

Counting model:
    - CREATE adds 1 when the new payload matches the rule
    - UPDATE adds matches(new) - matches(old), so an item that stops matching
      decrements the counter; enrich and restore count as UPDATE
    - Scope ``meta`` is global; scope ``tenant`` is keyed ``tenant:<scope key>``

Invariants:
    - Counters may lag the triggering write by the debounce window
    - The rollup loop only talks to the counter store

How to change safely:
    - Rule predicates use the listing filter grammar; keep them in sync
    - Changing bucket boundaries requires rebuilding rollups
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ..config import CounterRetention, CounterRule, RollupConfig
from ..errors import ValidationError
from ..index.filters import Predicate, matches, parse_filter
from ..routing import RouteTarget
from .store import CounterBucket, CounterDelta, CounterStore, RollupResult

logger = logging.getLogger(__name__)

META_SCOPE = "meta"


def scope_key_for(scope: str, tenant_scope: str | None = None) -> str:
    """Storage key of a counter scope."""
    if scope == META_SCOPE:
        return META_SCOPE
    if not tenant_scope:
        raise ValidationError("Tenant-scoped counters need a scope key", field_name="scope_key")
    return tenant_scope if tenant_scope.startswith("tenant:") else f"tenant:{tenant_scope}"


class CounterEngine:
    """Counter rule evaluation and rollup scheduling.

    Example:
        >>> engine = CounterEngine(rules, store, rollup_config, retention)
        >>> deltas = engine.deltas_for("UPDATE", target, old_payload, new_payload, now_ms)
        >>> await engine.apply(deltas)
    """

    def __init__(
        self,
        rules: tuple[CounterRule, ...],
        store: CounterStore,
        rollup: RollupConfig,
        retention: CounterRetention,
    ) -> None:
        self.rules = rules
        self.store = store
        self.rollup_config = rollup
        self.retention = retention
        # Rule filters are dotted paths over the full payload
        self._predicates: dict[str, list[Predicate]] = {
            rule.name: parse_filter(rule.when) for rule in rules
        }
        self._running = False

    def deltas_for(
        self,
        op: str,
        target: RouteTarget,
        old_payload: dict[str, Any] | None,
        new_payload: dict[str, Any],
        at: int,
    ) -> list[CounterDelta]:
        """Counter changes caused by one committed write."""
        deltas = []
        for rule in self.rules:
            if op not in rule.on:
                continue
            predicates = self._predicates[rule.name]
            delta = int(matches(new_payload, predicates))
            if op == "UPDATE" and old_payload is not None:
                delta -= int(matches(old_payload, predicates))
            if delta:
                deltas.append(
                    CounterDelta(
                        scope_key=scope_key_for(rule.scope, target.tenant_scope),
                        name=rule.name,
                        delta=delta,
                        at=at,
                    )
                )
        return deltas

    async def apply(self, deltas: list[CounterDelta]) -> None:
        await self.store.apply_deltas(deltas)

    async def get_total(self, name: str, scope: str = META_SCOPE, scope_key: str | None = None) -> int:
        return await self.store.get_total(scope_key_for(scope, scope_key), name)

    async def get_buckets(
        self,
        name: str,
        granularity: str,
        scope: str = META_SCOPE,
        scope_key: str | None = None,
    ) -> list[CounterBucket]:
        return await self.store.get_buckets(scope_key_for(scope, scope_key), name, granularity)

    async def rollup_once(self, now_ms: int | None = None) -> RollupResult:
        """Compact raw events into buckets and prune old buckets."""
        if not self.rollup_config.enabled:
            return RollupResult()
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        result = await self.store.rollup(now_ms, self.retention)
        logger.info(
            "Counter rollup complete",
            extra={"events_rolled": result.events_rolled, "buckets_pruned": result.buckets_pruned},
        )
        return result

    async def start(self) -> None:
        """Run the rollup loop until stop()."""
        if self._running:
            logger.warning("Rollup loop already running")
            return
        if not self.rollup_config.enabled:
            logger.info("Counter rollup disabled")
            return

        self._running = True
        logger.info(
            "Starting counter rollup loop",
            extra={"interval_seconds": self.rollup_config.interval_seconds},
        )
        try:
            while self._running:
                try:
                    await self.rollup_once()
                except Exception as e:
                    logger.error(f"Counter rollup error: {e}", exc_info=True)
                await asyncio.sleep(self.rollup_config.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Counter rollup loop cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False

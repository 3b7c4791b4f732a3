"""Cache invalidation coordinator.

Every write path calls into this module after its commit. Invalidation is
best-effort: failures are logged and reported as `False`, never raised, so a
cache outage can never roll back or fail the write that triggered it.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvalidationRule:
    """Which cache keys depend on one entity type."""
    prefix: str
    keys: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    related: tuple[str, ...] = ()

    def entity_key(self, entity_id: int) -> str:
        return f"{self.prefix}:id:{entity_id}"


DEFAULT_RULES: dict[str, InvalidationRule] = {
    "company": InvalidationRule(prefix="company", keys=(cache_keys.COMPANY_MAIN,)),
    "product": InvalidationRule(
        prefix="product",
        patterns=("products:*",),
        related=("productvariant",),
    ),
    "productvariant": InvalidationRule(prefix="variant", patterns=("product:variants:*",)),
    "file": InvalidationRule(
        prefix="file",
        keys=(cache_keys.FILE_RECENT, cache_keys.FILE_STATISTICS),
    ),
    "page": InvalidationRule(prefix="page"),
    "user": InvalidationRule(prefix="user"),
    "componenttemplate": InvalidationRule(prefix="component:template"),
}


@dataclass
class InvalidationRequest:
    entity_type: str
    entity_id: int | None = None


class CacheInvalidationCoordinator:
    """Maps entity changes to cache removals."""

    def __init__(self, cache: CacheService, rules: dict[str, InvalidationRule] | None = None):
        self.cache = cache
        self._rules = dict(DEFAULT_RULES if rules is None else rules)

    def register(self, entity_type: str, rule: InvalidationRule):
        self._rules[entity_type.lower()] = rule

    def rule_for(self, entity_type: str) -> InvalidationRule:
        rule = self._rules.get(entity_type.lower())
        if rule is None:
            rule = InvalidationRule(prefix=entity_type.lower())
        return rule

    async def _remove(self, keys: Iterable[str] = (), patterns: Iterable[str] = ()) -> bool:
        ok = True
        for key in keys:
            try:
                await self.cache.remove(key)
            except Exception as e:
                ok = False
                logger.warning("Cache invalidation failed | key=%s | %s", key, str(e)[:200])
        for pattern in patterns:
            try:
                await self.cache.remove_by_pattern(pattern)
            except Exception as e:
                ok = False
                logger.warning("Cache invalidation failed | pattern=%s | %s", pattern, str(e)[:200])
        return ok

    async def invalidate_entity(self, entity_type: str, entity_id: int) -> bool:
        """Drop the cached entity and every key declared as depending on it."""
        rule = self.rule_for(entity_type)
        keys = [rule.entity_key(entity_id), *rule.keys]
        patterns = [f"{rule.prefix}:*:{entity_id}", *rule.patterns]
        ok = await self._remove(keys, patterns)
        logger.debug("Invalidated entity | type=%s | id=%s | ok=%s", entity_type, entity_id, ok)
        return ok

    async def invalidate_entity_type(self, entity_type: str) -> bool:
        """Drop every list, count and aggregate cache of a type."""
        rule = self.rule_for(entity_type)
        keys = list(rule.keys)
        patterns = [cache_keys.pattern(rule.prefix), *rule.patterns]
        for related in rule.related:
            related_rule = self.rule_for(related)
            keys.extend(related_rule.keys)
            patterns.append(cache_keys.pattern(related_rule.prefix))
            patterns.extend(related_rule.patterns)
        ok = await self._remove(keys, patterns)
        logger.debug("Invalidated entity type | type=%s | ok=%s", entity_type, ok)
        return ok

    async def invalidate_search(self, term: str | None = None) -> bool:
        """Drop cached search responses and suggestions.

        Search keys are hashed, so every search entry goes regardless of
        `term`; suggestions can be narrowed to the term.
        """
        suggestions = cache_keys.pattern(cache_keys.SUGGESTIONS_PREFIX)
        if term and term.strip():
            suggestions = f"{cache_keys.SUGGESTIONS_PREFIX}:*{term.strip().lower()}*"
        return await self._remove(patterns=[cache_keys.pattern(cache_keys.SEARCH_PREFIX), suggestions])

    async def invalidate_many(self, requests: Iterable[InvalidationRequest]) -> bool:
        ok = True
        for request in requests:
            if request.entity_id is None:
                ok = await self.invalidate_entity_type(request.entity_type) and ok
            else:
                ok = await self.invalidate_entity(request.entity_type, request.entity_id) and ok
        return ok

    async def invalidate_all(self) -> bool:
        logger.info("Invalidating entire cache")
        return await self._remove(patterns=["*"])

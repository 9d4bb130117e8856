"""
Query Cache - caches read-heavy query results (review queue, budget status).

Backed by the Django cache framework, so the backend is chosen in settings:
LocMemCache for a single instance, Redis when several instances share state.

Invalidation is explicit: every key lives under a namespace, and each
namespace has a version number stored in the cache. Invalidating a namespace
bumps its version, which orphans every key built with the old version. The
repositories call invalidate() for their namespaces on every mutation; the
TTL only bounds how long orphaned keys occupy memory.

Usage:
    cache = QueryCache()
    queue = cache.get_or_set("review_queue", {"status": "pending"}, load_queue)
    cache.invalidate("review_queue")
"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

# Namespaces
REVIEW_QUEUE = "review_queue"
BUDGET_STATUS = "budget_status"
STRATEGIES = "strategies"
PARTNERS = "partners"


class QueryCache:
    """
    Namespaced, version-invalidated cache over a Django cache alias.

    Args:
        alias: Django cache alias (default from INGESTION_CACHE_ALIAS)
        default_ttl: Seconds before an entry expires regardless of invalidation
        prefix: Key prefix, allows several caches on one backend
    """

    def __init__(
        self,
        alias: Optional[str] = None,
        default_ttl: Optional[int] = None,
        prefix: str = "ingestion",
    ):
        self.alias = alias or getattr(settings, "INGESTION_CACHE_ALIAS", "default")
        self.default_ttl = default_ttl or getattr(settings, "INGESTION_CACHE_TTL", 300)
        self.prefix = prefix

    @property
    def backend(self):
        return caches[self.alias]

    def _version_key(self, namespace: str) -> str:
        return f"{self.prefix}:ns:{namespace}:version"

    def _namespace_version(self, namespace: str) -> int:
        version = self.backend.get(self._version_key(namespace))
        if version is None:
            version = 1
            self.backend.add(self._version_key(namespace), version, None)
        return version

    def make_key(self, namespace: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Build the cache key for a namespace and request shape.

        Returns:
            Key string like "ingestion:review_queue:v3:<sha1 of params>"
        """
        raw = json.dumps(params or {}, sort_keys=True, default=str)
        digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
        version = self._namespace_version(namespace)
        return f"{self.prefix}:{namespace}:v{version}:{digest}"

    def get(self, namespace: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.backend.get(self.make_key(namespace, params))

    def set(
        self,
        namespace: str,
        params: Optional[Dict[str, Any]],
        value: Any,
        ttl: Optional[int] = None,
    ) -> None:
        self.backend.set(self.make_key(namespace, params), value, ttl or self.default_ttl)

    def get_or_set(
        self,
        namespace: str,
        params: Optional[Dict[str, Any]],
        loader: Callable[[], Any],
        ttl: Optional[int] = None,
    ) -> Any:
        """Return the cached value or compute it with loader() and store it."""
        key = self.make_key(namespace, params)
        value = self.backend.get(key)
        if value is not None:
            return value
        value = loader()
        self.backend.set(key, value, ttl or self.default_ttl)
        return value

    def invalidate(self, *namespaces: str) -> None:
        """Bump namespace versions so every existing key in them misses."""
        for namespace in namespaces:
            key = self._version_key(namespace)
            try:
                self.backend.incr(key)
            except ValueError:
                # Version key missing or evicted, restart from a value no old key used
                self.backend.set(key, int(time.time() * 1000), None)
            logger.debug("Invalidated cache namespace %s", namespace)

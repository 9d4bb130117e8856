"""
Repository abstraction over keyed documents.

Every service talks to storage through a Repository instead of reaching for
Model.objects directly, so services can be built with any repository (or a
test double) passed in.

Contract:
- get / get_by_ids / query / count read
- create sets created_at and updated_at in the same INSERT
- update / increment / delete / batch mutate and always advance updated_at
- increment uses F() expressions, never read-modify-write
- mutations invalidate the cache namespaces the repository was built with
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from django.core.exceptions import FieldDoesNotExist
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

from ingestion.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

Filters = Union[Dict[str, Any], Q, None]


@dataclass
class BatchOperation:
    """A single write inside Repository.batch()."""

    op: str  # create | update | delete
    id: Any = None
    data: Dict[str, Any] = field(default_factory=dict)


class Repository:
    """
    Generic CRUD + query interface for one Django model.

    Args:
        model: Model class backing this repository
        cache: Optional QueryCache to invalidate on mutation
        cache_namespaces: Namespaces invalidated by every mutation
    """

    def __init__(self, model, cache=None, cache_namespaces: Sequence[str] = ()):
        self.model = model
        self._cache = cache
        self._cache_namespaces = tuple(cache_namespaces)
        self._has_updated_at = self._has_field("updated_at")
        self._has_created_at = self._has_field("created_at")

    @property
    def name(self) -> str:
        return self.model.__name__

    def _has_field(self, name: str) -> bool:
        try:
            self.model._meta.get_field(name)
            return True
        except FieldDoesNotExist:
            return False

    def _apply_filters(self, qs: models.QuerySet, filters: Filters) -> models.QuerySet:
        if filters is None:
            return qs
        if isinstance(filters, Q):
            return qs.filter(filters)
        return qs.filter(**filters)

    def _touched(self):
        if self._cache is not None and self._cache_namespaces:
            self._cache.invalidate(*self._cache_namespaces)

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def all(self) -> models.QuerySet:
        return self.model.objects.all()

    def get(self, pk: Any):
        """Return the record with this id, or None."""
        try:
            return self.model.objects.get(pk=pk)
        except (self.model.DoesNotExist, DjangoValidationError, ValueError, TypeError):
            # Malformed UUIDs raise django ValidationError on lookup
            return None

    def get_or_raise(self, pk: Any):
        """Return the record with this id or raise NotFoundError."""
        record = self.get(pk)
        if record is None:
            raise NotFoundError(self.name, pk)
        return record

    def get_by_ids(self, ids: Iterable[Any]) -> List[Any]:
        """Return existing records for ids, in the order the ids were given."""
        ids = [str(i) for i in ids]
        found = {str(obj.pk): obj for obj in self.model.objects.filter(pk__in=ids)}
        return [found[i] for i in ids if i in found]

    def query(
        self,
        filters: Filters = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Any]:
        """
        Filter, order and page records.

        Args:
            filters: Field lookups dict or a Q object
            order_by: Field names, "-" prefix for descending
            limit: Maximum rows (None for all)
            offset: Rows to skip
        """
        qs = self._apply_filters(self.model.objects.all(), filters)
        if order_by:
            qs = qs.order_by(*order_by)
        if offset < 0:
            raise ValidationError("offset cannot be negative", details={"field": "offset"})
        if limit is not None and limit < 0:
            raise ValidationError("limit cannot be negative", details={"field": "limit"})
        if limit is not None:
            qs = qs[offset:offset + limit]
        elif offset:
            qs = qs[offset:]
        return list(qs)

    def count(self, filters: Filters = None) -> int:
        return self._apply_filters(self.model.objects.all(), filters).count()

    def exists(self, filters: Filters = None) -> bool:
        return self._apply_filters(self.model.objects.all(), filters).exists()

    def aggregate(self, filters: Filters = None, **expressions) -> Dict[str, Any]:
        """Run Django aggregate expressions (Sum, Avg, Count) over filtered rows."""
        return self._apply_filters(self.model.objects.all(), filters).aggregate(**expressions)

    def lock(self, pk: Any):
        """
        Fetch a record with a row lock. Must be called inside transaction.atomic().

        Raises:
            NotFoundError: no record with this id
        """
        try:
            return self.model.objects.select_for_update().get(pk=pk)
        except self.model.DoesNotExist:
            raise NotFoundError(self.name, pk)

    # --------------------------------------------------------
    # Writes
    # --------------------------------------------------------

    def create(self, **data):
        """Insert a record with created_at == updated_at."""
        now = timezone.now()
        if self._has_created_at:
            data.setdefault("created_at", now)
        if self._has_updated_at:
            data.setdefault("updated_at", data.get("created_at", now))
        record = self.model.objects.create(**data)
        self._touched()
        return record

    def get_or_create(self, defaults: Optional[Dict[str, Any]] = None, **lookup):
        """
        Fetch the record matching lookup or insert it.

        Returns:
            Tuple of (record, created)
        """
        defaults = dict(defaults or {})
        now = timezone.now()
        if self._has_created_at:
            defaults.setdefault("created_at", now)
        if self._has_updated_at:
            defaults.setdefault("updated_at", defaults.get("created_at", now))
        record, created = self.model.objects.get_or_create(defaults=defaults, **lookup)
        if created:
            self._touched()
        return record, created

    def update(self, pk: Any, **partial):
        """
        Apply a partial update and return the refreshed record.

        Values may be F() expressions.

        Raises:
            NotFoundError: no record with this id
        """
        if self._has_updated_at:
            partial.setdefault("updated_at", timezone.now())
        updated = self.model.objects.filter(pk=pk).update(**partial)
        if not updated:
            raise NotFoundError(self.name, pk)
        self._touched()
        return self.model.objects.get(pk=pk)

    def update_where(self, filters: Filters, **partial) -> int:
        """Conditional update. Returns the number of rows changed."""
        if self._has_updated_at:
            partial.setdefault("updated_at", timezone.now())
        updated = self._apply_filters(self.model.objects.all(), filters).update(**partial)
        if updated:
            self._touched()
        return updated

    def increment(self, pk: Any, filters: Filters = None, **deltas) -> int:
        """
        Atomically add deltas to numeric fields.

        Args:
            pk: Record id
            filters: Extra conditions the row must satisfy
            **deltas: field -> amount

        Returns:
            Number of rows changed (0 or 1)
        """
        changes = {name: F(name) + amount for name, amount in deltas.items()}
        if self._has_updated_at:
            changes["updated_at"] = timezone.now()
        qs = self._apply_filters(self.model.objects.filter(pk=pk), filters)
        updated = qs.update(**changes)
        if updated:
            self._touched()
        return updated

    def delete(self, pk: Any) -> bool:
        deleted, _ = self.model.objects.filter(pk=pk).delete()
        if deleted:
            self._touched()
        return bool(deleted)

    def delete_where(self, filters: Filters) -> int:
        deleted, _ = self._apply_filters(self.model.objects.all(), filters).delete()
        if deleted:
            self._touched()
        return deleted

    def batch(self, operations: Sequence[BatchOperation]) -> List[Any]:
        """
        Run several writes in one transaction.

        Returns:
            One result per operation (record for create/update, bool for delete)
        """
        results = []
        with transaction.atomic():
            for operation in operations:
                if operation.op == "create":
                    results.append(self.create(**operation.data))
                elif operation.op == "update":
                    results.append(self.update(operation.id, **operation.data))
                elif operation.op == "delete":
                    results.append(self.delete(operation.id))
                else:
                    raise ValidationError(f"Unknown batch operation: {operation.op}")
        logger.debug("Batch of %d operations applied to %s", len(operations), self.name)
        return results

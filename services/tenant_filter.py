# services/tenant_filter.py

from typing import Any, Iterable, List, Optional, TypeVar

T = TypeVar("T")

TENANT_FIELDS = ("tenant_id", "society_id")
AFFECTED_FIELDS = ("affected_tenants", "affected_societies")


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _first_field(item: Any, names) -> Optional[Any]:
    for name in names:
        value = _field(item, name)
        if value:
            return value
    return None


def filter_for_tenant(items: Iterable[T], tenant_id: Optional[str]) -> List[T]:
    """
    Scope shared items (notifications, analytics rows) to one tenant.

    - items with no tenant association are global and pass through
    - items tagged with tenant_id pass
    - items listing tenant_id among their affected tenants pass
    - everything tagged for another tenant is dropped
    """
    scoped: List[T] = []
    for item in items:
        owner = _first_field(item, TENANT_FIELDS)
        affected = _first_field(item, AFFECTED_FIELDS) or ()

        if owner is None and not affected:
            scoped.append(item)
        elif tenant_id and (owner == tenant_id or tenant_id in affected):
            scoped.append(item)
    return scoped

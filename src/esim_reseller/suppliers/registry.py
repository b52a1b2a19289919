"""Supplier registry - creates adapter instances from settings."""

from esim_reseller.config import Settings, settings
from esim_reseller.core.exceptions import SupplierNotFoundException
from esim_reseller.db.models import SupplierName
from esim_reseller.suppliers.base import SupplierAdapter

_adapter_instances: dict[SupplierName, SupplierAdapter] = {}


def build_adapter(supplier: SupplierName, config: Settings) -> SupplierAdapter:
    """Create a fresh adapter wired with ``config`` credentials."""
    if supplier == SupplierName.SUPPLIER_A:
        from esim_reseller.suppliers.supplier_a import SupplierAAdapter

        return SupplierAAdapter.from_settings(config)

    if supplier == SupplierName.SUPPLIER_B:
        from esim_reseller.suppliers.supplier_b import SupplierBAdapter

        return SupplierBAdapter.from_settings(config)

    raise SupplierNotFoundException(f"Unknown supplier: {supplier}")


def get_adapter(supplier: SupplierName | str) -> SupplierAdapter:
    """Get or create the adapter for a supplier."""
    try:
        name = SupplierName(supplier)
    except ValueError as e:
        raise SupplierNotFoundException(f"Unknown supplier: {supplier}") from e

    if name not in _adapter_instances:
        _adapter_instances[name] = build_adapter(name, settings)
    return _adapter_instances[name]


async def close_adapters() -> None:
    """Close HTTP clients and clear the cache."""
    for adapter in _adapter_instances.values():
        await adapter.close()
    _adapter_instances.clear()


def clear_adapter_cache() -> None:
    """Clear adapter cache."""
    _adapter_instances.clear()

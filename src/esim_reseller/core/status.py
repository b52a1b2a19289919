"""Normalization of supplier eSIM status vocabularies.

Supplier B reports a (state, service_status, network_status) triple, stored
historically in three shapes: a dict, a JSON string, and a legacy string like
``"state: RELEASED, service: ACTIVE, network: ENABLED"``. Supplier A reports a
single ``esimStatus`` string. Both collapse to ``NormalizedStatus``.
"""

import json
from typing import Any

from pydantic import BaseModel

from esim_reseller.core.logging import get_logger

logger = get_logger(__name__)

# Maps legacy string keys to triple fields
_LEGACY_KEYS = {
    "state": "state",
    "service": "service_status",
    "service_status": "service_status",
    "network": "network_status",
    "network_status": "network_status",
}


class StatusTriple(BaseModel):
    """Supplier B raw status fields."""

    state: str | None = None
    service_status: str | None = None
    network_status: str | None = None

    def to_storage(self) -> str:
        """Canonical JSON for orders.real_status (stable key order)."""
        return json.dumps(
            {
                "network_status": self.network_status or "UNKNOWN",
                "service_status": self.service_status or "UNKNOWN",
                "state": self.state or "UNKNOWN",
            },
            sort_keys=True,
        )


class NormalizedStatus(BaseModel):
    """Supplier-independent eSIM status."""

    display_status: str
    is_connected: bool = False
    is_active: bool = False


def _from_mapping(data: dict[str, Any]) -> StatusTriple:
    nested = data.get("esim") if isinstance(data.get("esim"), dict) else {}
    return StatusTriple(
        state=data.get("state") or nested.get("state"),
        network_status=data.get("network_status") or nested.get("network_status"),
        service_status=data.get("service_status") or nested.get("service_status"),
    )


def _parse_legacy_string(text: str) -> StatusTriple:
    fields: dict[str, str] = {}
    for part in text.split(","):
        key, sep, value = part.partition(":")
        if not sep:
            continue
        field = _LEGACY_KEYS.get(key.strip().lower())
        cleaned = value.strip().upper()
        if field and cleaned:
            fields[field] = cleaned
    return StatusTriple(**fields)


def parse_real_status(raw: Any) -> StatusTriple:
    """Parse a Supplier B status from a dict, JSON string or legacy string.

    JSON is attempted first; anything that does not decode to an object falls
    back to comma/colon splitting. Unparseable input yields an empty triple.
    """
    if not raw:
        return StatusTriple()

    if isinstance(raw, dict):
        return _from_mapping(raw)

    if isinstance(raw, str):
        text = raw.strip()
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return _from_mapping(decoded)
        return _parse_legacy_string(text)

    logger.warning("status_parse_unsupported", input_type=type(raw).__name__)
    return StatusTriple()


def normalize_supplier_b_status(raw: Any) -> NormalizedStatus:
    """Apply Supplier B display rules.

    RELEASED + ENABLED means the profile is released to the customer but has
    not attached to a network yet, so it is NOT_ACTIVE rather than ENABLED.
    """
    triple = raw if isinstance(raw, StatusTriple) else parse_real_status(raw)
    state = triple.state
    network = triple.network_status

    if state == "RELEASED" and network == "ENABLED":
        return NormalizedStatus(display_status="NOT_ACTIVE")
    if network == "ENABLED" and state != "RELEASED":
        return NormalizedStatus(display_status="ENABLED", is_connected=True, is_active=True)
    if network == "DISABLED":
        return NormalizedStatus(display_status="DISABLED")
    return NormalizedStatus(display_status=network or "UNKNOWN")


def normalize_supplier_a_status(raw: str | None) -> NormalizedStatus:
    """Apply Supplier A display rules: only IN_USE counts as connected."""
    status = (raw or "").strip().upper()
    if status == "IN_USE":
        return NormalizedStatus(display_status="IN_USE", is_connected=True, is_active=True)
    return NormalizedStatus(display_status=status or "UNKNOWN")

"""Valid-value lookup for Account, TaxRate and Contact.

Returned values use the same field names a write payload expects (``account_id``, ``code``,
``tax_type``, ``contact_id``) so a value can be copied straight into a retry.
"""
from typing import Any, Dict, List, Optional

from models import EntityType, TenantSnapshot

FILTER_KEYS = ("type", "status", "is_customer", "is_supplier")

_PROJECTIONS = {
    EntityType.ACCOUNT: ("accounts", ("account_id", "code", "name", "type", "tax_type", "status")),
    EntityType.TAX_RATE: ("tax_rates", ("tax_type", "name", "rate", "status")),
    EntityType.CONTACT: ("contacts", ("contact_id", "name", "email", "status", "is_customer", "is_supplier")),
}


class EnumIntrospector:
    def introspect(self, snapshot: TenantSnapshot, entity_type: EntityType | str,
                   filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        entity_type = EntityType(entity_type)
        if entity_type not in _PROJECTIONS:
            raise ValueError(f"Cannot introspect {entity_type.value}; expected Account, TaxRate or Contact")
        collection, fields = _PROJECTIONS[entity_type]
        criteria = {k: v for k, v in (filter or {}).items() if k in FILTER_KEYS and v is not None}

        values = []
        for item in getattr(snapshot, collection):
            record = item.model_dump(mode="json")
            if all(record.get(key) == expected for key, expected in criteria.items()):
                values.append({field: record.get(field) for field in fields})
        return values


def introspect(snapshot: TenantSnapshot, entity_type: EntityType | str,
               filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return EnumIntrospector().introspect(snapshot, entity_type, filter)

"""Sandbox-only behaviour: network fault injection, document lifecycles and seed data."""
import time
import uuid
import random
import zlib
from collections import deque
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from models import EntityType, TenantSnapshot

# ---- Network conditions ----

MAX_SIMULATION_SECONDS = 300
DEFAULT_FAILURE_RATE = 0.5

NETWORK_CONDITIONS = ("RATE_LIMIT", "TIMEOUT", "SERVER_ERROR", "TOKEN_EXPIRED", "INTERMITTENT")


@dataclass
class SimulatedFault:
    condition: str
    http_status: int
    message: str
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"condition": self.condition, "http_status": self.http_status, "message": self.message}
        if self.retry_after is not None:
            out["retry_after"] = self.retry_after
        return out


@dataclass
class _ActiveCondition:
    condition: str
    expires_at: float
    failure_rate: float
    request_count: int = 0
    failures: int = 0
    started_at: float = field(default_factory=time.time)


class NetworkSimulator:
    """Per-tenant fault injection consulted by write tools before they touch the backend."""

    def __init__(self, rng: Optional[random.Random] = None, clock=time.time):
        self._active: Dict[str, _ActiveCondition] = {}
        self._rng = rng or random.Random()
        self._clock = clock

    def activate(self, tenant_id: str, condition: str, duration_seconds: int,
                 failure_rate: Optional[float] = None) -> Optional[Dict[str, Any]]:
        condition = condition.upper()
        if condition not in NETWORK_CONDITIONS:
            raise ValueError(f"Unknown network condition '{condition}'. Expected one of {', '.join(NETWORK_CONDITIONS)}")
        if not 0 <= duration_seconds <= MAX_SIMULATION_SECONDS:
            raise ValueError(f"duration_seconds must be between 0 and {MAX_SIMULATION_SECONDS}")
        if failure_rate is not None and not 0 <= failure_rate <= 1:
            raise ValueError("failure_rate must be between 0 and 1")
        if duration_seconds == 0:
            self.clear(tenant_id)
            return None
        active = _ActiveCondition(
            condition=condition,
            expires_at=self._clock() + duration_seconds,
            failure_rate=DEFAULT_FAILURE_RATE if failure_rate is None else failure_rate,
            started_at=self._clock(),
        )
        self._active[tenant_id] = active
        return self._describe(active)

    def clear(self, tenant_id: str) -> bool:
        return self._active.pop(tenant_id, None) is not None

    def status(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        active = self._current(tenant_id)
        return self._describe(active) if active else None

    def _current(self, tenant_id: str) -> Optional[_ActiveCondition]:
        active = self._active.get(tenant_id)
        if active and active.expires_at <= self._clock():
            del self._active[tenant_id]
            return None
        return active

    def _describe(self, active: _ActiveCondition) -> Dict[str, Any]:
        return {
            "condition": active.condition,
            "expires_in_seconds": max(0, int(round(active.expires_at - self._clock()))),
            "failure_rate": active.failure_rate if active.condition == "INTERMITTENT" else None,
            "request_count": active.request_count,
            "failures": active.failures,
        }

    def check(self, tenant_id: str) -> Optional[SimulatedFault]:
        active = self._current(tenant_id)
        if active is None:
            return None
        active.request_count += 1
        fault = self._fault_for(active)
        if fault is not None:
            active.failures += 1
        return fault

    def _fault_for(self, active: _ActiveCondition) -> Optional[SimulatedFault]:
        if active.condition == "RATE_LIMIT":
            return SimulatedFault("RATE_LIMIT", 429, "Rate limit exceeded (simulated)", retry_after=60)
        if active.condition == "TIMEOUT":
            return SimulatedFault("TIMEOUT", 408, "Request timed out (simulated)")
        if active.condition == "SERVER_ERROR":
            status = self._rng.choice((500, 502, 503))
            return SimulatedFault("SERVER_ERROR", status, f"Server error {status} (simulated)")
        if active.condition == "TOKEN_EXPIRED":
            return SimulatedFault("TOKEN_EXPIRED", 401, "Access token expired (simulated)")
        if self._rng.random() < active.failure_rate:
            return SimulatedFault("INTERMITTENT", 503, "Service temporarily unavailable (simulated)")
        return None


# ---- Document lifecycles ----

INVOICE_TRANSITIONS: Dict[str, List[str]] = {
    "DRAFT": ["SUBMITTED", "AUTHORISED", "VOIDED"],
    "SUBMITTED": ["AUTHORISED", "DRAFT", "VOIDED"],
    "AUTHORISED": ["PAID", "VOIDED"],
    "PAID": [],
    "VOIDED": [],
}

QUOTE_TRANSITIONS: Dict[str, List[str]] = {
    "DRAFT": ["SENT", "DECLINED"],
    "SENT": ["ACCEPTED", "DECLINED", "DRAFT"],
    "ACCEPTED": ["INVOICED"],
    "DECLINED": ["DRAFT"],
    "INVOICED": [],
}

LIFECYCLES: Dict[EntityType, Dict[str, List[str]]] = {
    EntityType.INVOICE: INVOICE_TRANSITIONS,
    EntityType.CREDIT_NOTE: INVOICE_TRANSITIONS,
    EntityType.QUOTE: QUOTE_TRANSITIONS,
}


def find_transition_path(transitions: Dict[str, List[str]], start: str, target: str) -> Optional[List[str]]:
    """Shortest list of states from ``start`` to ``target`` (both included), or None."""
    if start == target:
        return [start]
    queue = deque([[start]])
    seen = {start}
    while queue:
        path = queue.popleft()
        for nxt in transitions.get(path[-1], []):
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append(path + [nxt])
    return None


# ---- Seed data ----

SEED_ENTITIES = ("CONTACTS", "INVOICES")
SEED_SCENARIOS = ("DEFAULT", "OVERDUE_BILLS", "MIXED_STATUS", "HIGH_VALUE")

_COMPANY_PREFIXES = ["Acme", "Global", "Pacific", "Southern", "Northern", "Eastern", "Western", "Metro", "Premier", "Elite"]
_COMPANY_TYPES = ["Solutions", "Services", "Industries", "Group", "Partners", "Holdings", "Enterprises",
                  "Technologies", "Consulting", "Trading"]
_COMPANY_SUFFIXES = ["Pty Ltd", "Ltd", "Inc", "Corp", "Co"]
_FIRST_NAMES = ["James", "Emma", "Michael", "Sarah", "David", "Jennifer", "Robert", "Lisa", "William", "Jessica"]
_LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Davis", "Miller", "Wilson", "Moore", "Taylor"]
_DESCRIPTIONS = [
    "Consulting Services - Monthly Retainer",
    "Software Development",
    "Project Management",
    "Technical Support",
    "Training Services",
    "Website Maintenance",
    "Marketing Services",
    "Design Services",
    "Data Analysis",
    "System Integration",
]


def _seed_for(*parts: Any) -> int:
    return zlib.crc32("|".join(str(p) for p in parts).encode("utf-8"))


class SeedGenerator:
    """Template-based sample payloads built from a tenant's active accounts and contacts.

    Output depends only on the tenant, entity, count, scenario and seed, so the same
    request produces the same data.
    """

    def __init__(self, today: Optional[date] = None):
        self.today = today or date.today()

    def generate(self, snapshot: TenantSnapshot, entity: str, count: int, scenario: str = "DEFAULT",
                 seed: Optional[int] = None) -> List[Dict[str, Any]]:
        rng = random.Random(seed if seed is not None else _seed_for(snapshot.tenant_id, entity, count, scenario))
        if entity == "CONTACTS":
            return [self._contact(rng) for _ in range(count)]
        if entity == "INVOICES":
            return [self._invoice(snapshot, scenario, rng) for _ in range(count)]
        raise ValueError(f"Unknown seed entity '{entity}'. Expected one of {', '.join(SEED_ENTITIES)}")

    @staticmethod
    def _contact(rng: random.Random) -> Dict[str, Any]:
        first = rng.choice(_FIRST_NAMES)
        last = rng.choice(_LAST_NAMES)
        company = f"{rng.choice(_COMPANY_PREFIXES)} {rng.choice(_COMPANY_TYPES)} {rng.choice(_COMPANY_SUFFIXES)}"
        domain = company.lower().replace(" ", "")[:10]
        return {
            "contact_id": f"gen-contact-{uuid.UUID(int=rng.getrandbits(128)).hex[:8]}",
            "name": company,
            "first_name": first,
            "last_name": last,
            "email": f"{first.lower()}.{last.lower()}@{domain}.com",
            "is_customer": rng.random() > 0.3,
            "is_supplier": rng.random() > 0.7,
            "status": "ACTIVE",
        }

    def _invoice(self, snapshot: TenantSnapshot, scenario: str, rng: random.Random) -> Dict[str, Any]:
        accounts = [a for a in snapshot.accounts if a.status == "ACTIVE" and a.type == "REVENUE"]
        contacts = [c for c in snapshot.contacts if c.status == "ACTIVE"]
        active_tax = {t.tax_type for t in snapshot.tax_rates if t.status == "ACTIVE"}

        if scenario == "OVERDUE_BILLS":
            issued = self.today - timedelta(days=30 + rng.randrange(60))
            due = issued + timedelta(days=14)
            status = "AUTHORISED"
        elif scenario == "MIXED_STATUS":
            issued = self.today - timedelta(days=rng.randrange(30))
            due = issued + timedelta(days=30)
            status = rng.choice(["DRAFT", "AUTHORISED", "PAID"])
        elif scenario == "HIGH_VALUE":
            issued = self.today - timedelta(days=rng.randrange(7))
            due = issued + timedelta(days=30)
            status = "DRAFT"
        else:
            issued = self.today - timedelta(days=rng.randrange(14))
            due = issued + timedelta(days=30)
            status = "DRAFT" if rng.random() > 0.5 else "AUTHORISED"

        line_items = []
        for _ in range(1 + rng.randrange(3)):
            account = rng.choice(accounts) if accounts else None
            if scenario == "HIGH_VALUE":
                quantity, unit_amount = 10 + rng.randrange(50), 500 + rng.randrange(2000)
            else:
                quantity, unit_amount = 1 + rng.randrange(10), 50 + rng.randrange(450)
            item = {
                "description": rng.choice(_DESCRIPTIONS),
                "quantity": quantity,
                "unit_amount": unit_amount,
                "account_code": account.code if account else "",
            }
            if account and account.tax_type in active_tax:
                item["tax_type"] = account.tax_type
            line_items.append(item)

        contact = rng.choice(contacts) if contacts else None
        return {
            "invoice_id": f"gen-invoice-{uuid.UUID(int=rng.getrandbits(128)).hex[:8]}",
            "type": "ACCREC",
            "contact": {"contact_id": contact.contact_id if contact else ""},
            "date": issued.isoformat(),
            "due_date": due.isoformat(),
            "status": status,
            "line_amount_types": "Exclusive",
            "line_items": line_items,
            "currency_code": snapshot.currency,
        }

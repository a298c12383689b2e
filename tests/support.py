"""
Test doubles and builders shared by the test modules.

Imported as ``tests.support`` (the repo root is on pythonpath).
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from app.models.campaign import CampaignRecipient
from app.models.customer import Customer
from app.schemas.campaign import CampaignCreate
from app.services.audience import AudienceResolver, AudienceTarget
from app.services.campaign_store import CampaignStore
from app.services.gateway import SendResult

T0 = datetime(2026, 3, 2, 10, 0, 0)

# =============================================================================
# Time
# =============================================================================

class FrozenClock:
    """Callable wall clock (naive UTC) that only moves when told to"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, value: datetime):
        self.now = value


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value


class RecordingSleep:
    """Records every requested delay and advances both clocks by it"""

    def __init__(self, clock: FrozenClock, monotonic: FakeMonotonic):
        self.clock = clock
        self.monotonic = monotonic
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)
        self.clock.advance(seconds=seconds)
        self.monotonic.value += seconds
        # Still yield so concurrent drains interleave
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


# =============================================================================
# Gateway
# =============================================================================

class FakeGateway:
    """
    Records sends. Phones in ``fail_phones`` get a failed SendResult, phones in
    ``raise_phones`` raise. ``on_send`` runs after each call (e.g. to pause).
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_phones: Dict[str, str] = {}
        self.raise_phones: set = set()
        self.on_send: Optional[Callable[[Dict[str, Any]], None]] = None

    @property
    def phones(self) -> List[str]:
        return [call["phone"] for call in self.calls]

    def _record(self, kind: str, phone: str, **payload) -> SendResult:
        call = {"kind": kind, "phone": phone, **payload}
        self.calls.append(call)
        try:
            if phone in self.raise_phones:
                raise RuntimeError("connection reset by peer")
            if phone in self.fail_phones:
                return SendResult(success=False, error=self.fail_phones[phone])
            return SendResult(success=True, message_id=f"wamid.{len(self.calls)}")
        finally:
            if self.on_send:
                self.on_send(call)

    def send_text(self, phone, text):
        return self._record("text", phone, text=text)

    def send_buttons(self, phone, text, buttons):
        return self._record("buttons", phone, text=text, buttons=buttons)

    def send_template(self, phone, template_name, params=None):
        return self._record("template", phone, template_name=template_name, params=params)

    def send_image(self, phone, image_url, caption=None):
        return self._record("image", phone, image_url=image_url, caption=caption)


# =============================================================================
# Builders
# =============================================================================

def add_customer(db, phone: str, tenant_id: str = "default", **fields) -> Customer:
    values = {
        "name": f"Customer {phone[-4:]}",
        "labels": [],
        "segment": "regular",
        "tier": "bronze",
        "order_count": 0,
        "total_spent": 0,
        "opted_in": True,
    }
    values.update(fields)
    customer = Customer(tenant_id=tenant_id, phone=phone, **values)
    db.add(customer)
    db.commit()
    return customer


def add_customers(db, count: int, start: int = 0, **fields) -> List[Customer]:
    return [add_customer(db, f"91987650{start + i:04d}", **fields) for i in range(count)]


def create_campaign(store: CampaignStore, tenant_id: str = "default", **fields):
    payload = {"name": "Diwali Sale", "message": "Flat 20% off today!"}
    payload.update(fields)
    return store.create(tenant_id, CampaignCreate(**payload))


def start_campaign(store: CampaignStore, campaign, clock=None):
    resolver = AudienceResolver(store.db, clock or store.clock)
    phones = resolver.phones(campaign.tenant_id, AudienceTarget.from_campaign(campaign))
    return store.start(campaign, phones)


def recipient_statuses(db, campaign) -> Dict[str, str]:
    db.expire_all()
    rows = db.query(CampaignRecipient).filter(
        CampaignRecipient.campaign_id == campaign.campaign_id
    ).all()
    return {row.phone: row.status for row in rows}


def assert_counters_balance(store: CampaignStore, campaign):
    """sent + failed + outstanding == target"""
    store.db.expire_all()
    store.db.refresh(campaign)
    assert (
        campaign.sent_count + campaign.failed_count + store.pending_count(campaign)
        == campaign.target_count
    )

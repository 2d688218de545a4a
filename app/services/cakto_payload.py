"""Normalisation of CAKTO webhook payloads.

The gateway's payload shape has drifted between webhook versions, so every
field is read through an ordered list of aliases and the first non-empty
value wins.
"""

import hashlib
from dataclasses import dataclass, field

from app.utils import parse_timestamp

EVENT_ID_HEADER = "X-Event-Id"
MAX_EVENT_ID_LENGTH = 255


def _dig(source, path):
    """Follow a dotted path through nested dicts; None when any hop is missing."""
    current = source
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_present(source, *paths):
    """Return the first value along `paths` that is not None/""."""
    for path in paths:
        value = _dig(source, path)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return None


def _as_str(value):
    if value is None:
        return None
    if isinstance(value, dict):
        return None
    return str(value)


def hash_payload(raw_body):
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8", "surrogatepass")
    return hashlib.sha256(raw_body).hexdigest()


@dataclass
class CaktoEvent:
    """Fields of one webhook delivery, after alias resolution."""

    event_id: str
    event_name: str
    status: str = None
    subscription_id: str = None
    checkout_token: str = None
    offer_id: str = None
    offer_name: str = None
    offer_price: object = None
    interval_type: str = None
    interval_count: int = None
    customer_email: str = None
    customer_name: str = None
    customer_phone: str = None
    customer_document: str = None
    company_name: str = None
    company_id: str = None
    period_start: object = None
    order_id: str = None
    payment_status: str = None
    payment_link_url: str = None
    payment_link_id: str = None
    data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)

    @property
    def email(self):
        if not self.customer_email:
            return None
        return str(self.customer_email).strip().lower() or None


def extract_data(payload):
    data = first_present(payload, "data", "payload.data", "object")
    return data if isinstance(data, dict) else payload


def extract_event_name(payload):
    data = extract_data(payload)
    name = first_present(payload, "event", "type", "event_type", "eventType")
    if name is None:
        name = first_present(data, "event", "event_type")
    return _as_str(name) or ""


def resolve_event_id(payload, raw_body, header_event_id=None):
    """Provider id aliases, then the X-Event-Id header, then a body hash.

    `data.id` is NOT an event id: for subscriptions it is the subscription
    id, which every renewal of that subscription repeats.
    """
    data = extract_data(payload)
    event_id = first_present(payload, "id", "event_id", "eventId")
    if event_id is None:
        event_id = first_present(data, "event_id", "eventId")
    if event_id is None and header_event_id:
        event_id = header_event_id.strip() or None
    if event_id is None:
        event_id = hash_payload(raw_body)
    event_id = str(event_id)
    # Longer ids would not fit the ledger column; hash rather than clip them.
    if len(event_id) > MAX_EVENT_ID_LENGTH:
        return hash_payload(event_id)
    return event_id


def _subscription_id(data):
    sub = data.get("subscription")
    if isinstance(sub, (str, int)) and str(sub).strip():
        return str(sub).strip()
    return _as_str(first_present(
        data,
        "subscription.id",
        "subscription.subscription_id",
        "subscription_id",
        "subscriptionId",
        "id",
        "refId",
    ))


def _interval_count(value):
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None
    return count if count > 0 else None


def parse_event(payload, raw_body, header_event_id=None):
    """Build a CaktoEvent from a decoded JSON payload."""
    data = extract_data(payload)
    metadata = first_present(data, "metadata", "meta")
    if not isinstance(metadata, dict):
        metadata = first_present(payload, "metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    offer = data.get("offer") if isinstance(data.get("offer"), dict) else {}

    return CaktoEvent(
        event_id=resolve_event_id(payload, raw_body, header_event_id),
        event_name=extract_event_name(payload),
        status=_as_str(first_present(data, "status", "state")),
        subscription_id=_subscription_id(data),
        checkout_token=_as_str(
            first_present(metadata, "checkout_token", "token")
            or first_present(data, "checkout_token", "checkoutToken")
        ),
        offer_id=_as_str(first_present(data, "offer.id", "offer_id", "offerId", "plan_id")),
        offer_name=_as_str(first_present(offer, "name") or first_present(data, "product.name")),
        offer_price=first_present(offer, "price") if offer else first_present(data, "amount"),
        interval_type=_as_str(
            first_present(offer, "intervalType", "interval_type")
            or first_present(data, "intervalType", "interval_type", "subscription.intervalType")
        ),
        interval_count=_interval_count(
            first_present(offer, "interval", "interval_count")
            or first_present(data, "interval", "interval_count", "subscription.interval")
        ),
        customer_email=_as_str(first_present(
            data, "customer.email", "customer_email", "email",
        ) or first_present(metadata, "email")),
        customer_name=_as_str(
            first_present(data, "customer.name", "customer_name")
            or first_present(metadata, "full_name", "name")
        ),
        customer_phone=_as_str(first_present(data, "customer.phone", "customer_phone", "phone")),
        customer_document=_as_str(first_present(
            data, "customer.docNumber", "customer.document", "customer.cpf", "customer_document",
        )),
        company_name=_as_str(
            first_present(metadata, "company_name") or first_present(data, "company_name")
        ),
        company_id=_as_str(
            first_present(metadata, "company_id", "companyId")
            or first_present(data, "company_id", "companyId")
        ),
        period_start=parse_timestamp(first_present(
            data,
            "current_period_start",
            "current_period_starts_at",
            "current_period_start_at",
            "current_period_start_date",
        )),
        order_id=_as_str(first_present(data, "order_id", "orderId", "id", "refId")),
        payment_status=_as_str(first_present(data, "payment_status", "status")),
        payment_link_url=_as_str(first_present(
            data, "payment_link_url", "checkout_url", "checkoutUrl", "payment_url",
        )),
        payment_link_id=_as_str(first_present(data, "payment_link_id", "paymentLinkId")),
        data=data,
        metadata=metadata,
    )

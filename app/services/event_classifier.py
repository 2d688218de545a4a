"""Event classifier — free-form gateway event names to lifecycle outcomes.

Two independent signals are ORed together: the event name and the payload's
status field. Either one saying "active" makes the event active. The rules
are data (keyword tables), so new gateway event names are added here
without touching code.
"""

import re

ACTIVE = "active"
IGNORED = "ignored"

# Each rule: the event name must contain a keyword from EVERY group.
EVENT_NAME_RULES = [
    ({"purchase", "payment", "order"}, {"approved", "paid"}),
    ({"subscription"}, {"active", "renewed"}),
]

STATUS_KEYWORDS = {"active", "approved", "paid"}

# Tokens that contain an "active" keyword but mean the opposite.
NEGATED_TOKENS = {
    "unpaid",
    "inactive",
    "notpaid",
    "unapproved",
    "disapproved",
    "deactivated",
}

_SPLIT = re.compile(r"[^a-z0-9]+")


def normalize_event_name(value):
    """Lowercase and turn whitespace/underscores into dots."""
    return re.sub(r"[\s_]+", ".", (value or "").strip().lower())


def _tokens(value):
    return [t for t in _SPLIT.split((value or "").lower()) if t and t not in NEGATED_TOKENS]


def _mentions(tokens, keywords):
    return any(keyword in token for token in tokens for keyword in keywords)


def classify_event_name(event_name):
    tokens = _tokens(normalize_event_name(event_name))
    for groups in EVENT_NAME_RULES:
        if all(_mentions(tokens, group) for group in groups):
            return ACTIVE
    return IGNORED


def classify_status(status):
    if not isinstance(status, str):
        return IGNORED
    return ACTIVE if _mentions(_tokens(status), STATUS_KEYWORDS) else IGNORED


def classify(event_name, status=None):
    """Return ACTIVE if either the event name or the status says so."""
    if classify_event_name(event_name) == ACTIVE:
        return ACTIVE
    return classify_status(status)

"""CAKTO service — gateway-facing helpers.

Responsible for:
- Verifying webhook signatures (HMAC-SHA256 over the raw body, with the
  payload-embedded shared secret as a fallback)
- Building conventional checkout URLs from offer ids
- Calling the CAKTO API (offer listing) with an OAuth client-credentials
  token held in an explicit TokenCache
"""

import hashlib
import hmac
import logging
import threading
import time

import requests
from flask import current_app

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Cakto-Signature", "X-Signature")

# Refresh tokens this many seconds before the provider says they expire.
TOKEN_EXPIRY_MARGIN = 60


# ──────────────────────────────────────────────
# Webhook signatures
# ──────────────────────────────────────────────

def compute_signature(secret, raw_body):
    """Hex HMAC-SHA256 of the raw body keyed with the webhook secret."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _payload_secret(payload):
    if not isinstance(payload, dict):
        return None
    secret = payload.get("secret")
    if secret is None and isinstance(payload.get("data"), dict):
        secret = payload["data"].get("secret")
    return secret


def _to_bytes(value):
    # compare_digest rejects non-ASCII str; lone surrogates can arrive via JSON.
    return value.encode("utf-8", "surrogatepass")


def verify_webhook_signature(secret, raw_body, signature_header=None, payload=None):
    """Check that a delivery was sent by the gateway.

    No secret configured means verification is disabled and every delivery
    passes; create_app() warns about this at startup.

    With a secret, the signature header (optionally prefixed "sha256=") must
    match the HMAC of the exact raw body. If it doesn't, a payload that
    embeds the same static secret is still accepted, for gateways that send
    the secret in the body instead of signing.
    """
    if not secret:
        return True

    if signature_header:
        received = signature_header.strip()
        if received.lower().startswith("sha256="):
            received = received[len("sha256="):]
        expected = compute_signature(secret, raw_body)
        if hmac.compare_digest(expected.encode(), _to_bytes(received.lower())):
            return True

    embedded = _payload_secret(payload)
    if isinstance(embedded, str) and hmac.compare_digest(_to_bytes(embedded), _to_bytes(secret)):
        return True

    return False


def get_signature_header(headers):
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


# ──────────────────────────────────────────────
# Offer ids / checkout URLs
# ──────────────────────────────────────────────

def _is_url(value):
    return value.lower().startswith(("http://", "https://"))


def build_checkout_url(offer_id, base_url=None):
    """Return the hosted checkout URL for an offer id (or the id itself if
    it already is a URL)."""
    offer_id = (offer_id or "").strip()
    if not offer_id:
        return None
    if _is_url(offer_id):
        return offer_id
    if base_url is None:
        base_url = current_app.config["CAKTO_CHECKOUT_BASE_URL"]
    return f"{base_url.rstrip('/')}/{offer_id}"


def offer_id_candidates(offer_id, base_url):
    """All forms under which an offer may be stored in plans.cakto_plan_id."""
    offer_id = str(offer_id).strip()
    candidates = [offer_id]
    if _is_url(offer_id):
        bare = offer_id.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
        if bare:
            candidates.append(bare)
    else:
        candidates.append(build_checkout_url(offer_id, base_url))
    return candidates


# ──────────────────────────────────────────────
# API client
# ──────────────────────────────────────────────

class TokenCache:
    """Holds one OAuth access token and its expiry.

    get() is single-flight: concurrent callers wait on the lock while one of
    them fetches, then all reuse the fresh token.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self.token = None
        self.expires_at = 0.0

    def valid(self):
        return bool(self.token) and self.expires_at > self._clock()

    def get(self, fetch):
        if self.valid():
            return self.token
        with self._lock:
            if self.valid():
                return self.token
            token, expires_in = fetch()
            self.token = token
            self.expires_at = self._clock() + max(int(expires_in) - TOKEN_EXPIRY_MARGIN, 0)
            return token

    def clear(self):
        with self._lock:
            self.token = None
            self.expires_at = 0.0


class CaktoAPIError(Exception):
    pass


class CaktoClient:
    """Thin wrapper over the CAKTO REST API."""

    def __init__(self, api_base, client_id, client_secret, token_cache=None,
                 session=None, timeout=15):
        self.api_base = (api_base or "").rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_cache = token_cache or TokenCache()
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config, token_cache=None):
        return cls(
            api_base=config.get("CAKTO_API_BASE"),
            client_id=config.get("CAKTO_CLIENT_ID"),
            client_secret=config.get("CAKTO_CLIENT_SECRET"),
            token_cache=token_cache,
        )

    @property
    def configured(self):
        return bool(self.api_base and self.client_id and self.client_secret)

    def _fetch_token(self):
        resp = self.session.post(
            f"{self.api_base}/oauth/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            timeout=self.timeout,
        )
        if not resp.ok:
            raise CaktoAPIError(f"Token request failed: {resp.status_code}")
        data = resp.json() or {}
        token = data.get("access_token")
        if not token:
            raise CaktoAPIError("Token response without access_token")
        return token, data.get("expires_in") or 3600

    def _request(self, method, path, **kwargs):
        token = self.token_cache.get(self._fetch_token)
        headers = {"Authorization": f"Bearer {token}"}
        resp = self.session.request(
            method, f"{self.api_base}{path}", headers=headers,
            timeout=self.timeout, **kwargs
        )
        if resp.status_code == 401:
            # Token revoked early; the next call refetches.
            self.token_cache.clear()
        if not resp.ok:
            raise CaktoAPIError(
                f"CAKTO {method} {path} failed: {resp.status_code} {resp.text[:200]}"
            )
        return resp.json()

    def list_offers(self, status="active"):
        """Return the provider's offers, normalised to a flat list of dicts."""
        raw = self._request("GET", "/public_api/offers/", params={"status": status})
        if isinstance(raw, dict):
            offers = raw.get("results") or []
        elif isinstance(raw, list):
            offers = raw
        else:
            offers = []

        normalized = []
        for offer in offers:
            offer_id = offer.get("id") or offer.get("short_id") or offer.get("offer_id")
            if not offer_id:
                continue
            price = offer.get("price")
            if isinstance(price, str):
                try:
                    price = float(price)
                except ValueError:
                    price = None
            normalized.append({
                "id": offer_id,
                "name": offer.get("name"),
                "price": price,
                "intervalType": offer.get("intervalType") or offer.get("interval_type"),
                "interval": offer.get("interval") or offer.get("interval_count"),
                "status": offer.get("status"),
                "type": offer.get("type"),
                "checkout_url": (
                    offer.get("checkoutUrl")
                    or offer.get("checkout_url")
                    or offer.get("salesPage")
                ),
            })
        return normalized


def get_cakto_client():
    """Return the app-scoped client (created in create_app)."""
    return current_app.extensions["cakto_client"]

"""Webhook processing error taxonomy.

Services raise these; app.services.webhook_processor translates them into a
ledger state and an HTTP status. Classified outcomes (skipped, ignored,
duplicate) always end with the ledger row marked processed. Dependency
failures never do, so the gateway's retry gets another attempt.
"""


class WebhookError(Exception):
    """Base class. `outcome` is the ledger status recorded for the event."""

    outcome = None

    def __init__(self, message="", **context):
        super().__init__(message)
        self.context = context


class AuthError(WebhookError):
    """Missing or invalid signature. 401, nothing written."""


class MalformedInput(WebhookError):
    """Required correlating fields are missing. Retrying won't fix it."""

    outcome = "skipped"


class NotRecognized(WebhookError):
    """Event name/status doesn't map to a lifecycle outcome we act on."""

    outcome = "ignored"


class DuplicateCompletion(WebhookError):
    """The checkout (or ledger row) behind this event is already terminal."""

    outcome = "duplicate"


class DependencyFailure(WebhookError):
    """Identity provider or data store call failed. Provider must retry."""


class NotificationFailure(WebhookError):
    """Access email could not be sent. Logged only."""


class EventInFlight(WebhookError):
    """Another delivery of the same event id won the ledger insert."""

from __future__ import annotations


class BeaconWebhookError(Exception):
    """Terminal or retryable failure of a Beacon webhook delivery.

    ``status_code`` is the HTTP status returned to the sender. Anything below
    500 tells the sender that redelivering the same payload will not help.
    """

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500


class WebhookAuthError(BeaconWebhookError):
    status_code = 401


class WebhookValidationError(BeaconWebhookError):
    status_code = 400


class LeadNotFoundError(BeaconWebhookError):
    status_code = 404


class WebhookInternalError(BeaconWebhookError):
    status_code = 500

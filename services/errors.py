"""Exception taxonomy for webhook and checkout processing.

The webhook router maps each class to a response code:

* ``SignatureError`` / ``PayloadError`` -> 400, the provider should not retry.
* ``SemanticError`` (and ``StalePeriodError``) -> logged, acknowledged with 200.
* ``AlreadyProcessed`` -> acknowledged with 200; not a failure.
* ``GatewayError`` and unexpected database errors -> 500 so the provider retries.
"""

from __future__ import annotations


class LicensingError(Exception):
    """Base class for license engine errors."""


class UnknownProviderError(LicensingError):
    """The provider name in the URL is not configured."""


class SignatureError(LicensingError):
    """Missing or invalid provider signature."""


class PayloadError(LicensingError):
    """Body could not be parsed into a known event shape."""


class SemanticError(LicensingError):
    """The event is well-formed but references data we cannot act on."""


class StalePeriodError(SemanticError):
    """A period update would move ``current_period_end`` backwards."""


class AlreadyProcessed(LicensingError):
    """A uniqueness constraint shows the effect was already applied.

    Raised after the surrounding unit of work has been rolled back.
    """

    def __init__(self, what: str, key: str):
        super().__init__(f"{what} {key} already recorded")
        self.what = what
        self.key = key


class GatewayError(LicensingError):
    """A provider API call failed in a way that may succeed on retry."""

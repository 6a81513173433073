"""Payment gateway port: the provider-agnostic interface the order lifecycle uses.

Adapters translate provider wire formats into these types. All amounts are in
the currency's minor unit (cents, kobo).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class GatewaySession:
    redirect_url: str
    reference: str


@dataclass(frozen=True)
class Verification:
    succeeded: bool
    amount_paid: int
    currency: str = ""
    authorization_token: str | None = None
    status: str = ""


class PaymentGateway(ABC):
    """Abstract interface for payment providers."""

    @abstractmethod
    def initialize_session(
        self,
        order_id: int,
        amount: int,
        currency: str,
        customer_email: str,
        callback_url: str,
    ) -> GatewaySession:
        """Open a checkout session and return where to send the shopper.

        Raises:
            GatewayUnavailable: transport error, timeout or provider outage.
            GatewayRejected: the provider refused the request.
        """
        ...

    @abstractmethod
    def verify(self, reference: str) -> Verification:
        """Ask the provider whether the session was paid, and how much.

        May be slow; callers must not hold locks or transactions across it.

        Raises:
            GatewayUnavailable: the answer could not be obtained.
        """
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """Return True only if ``signature`` authenticates ``raw_payload``."""
        ...

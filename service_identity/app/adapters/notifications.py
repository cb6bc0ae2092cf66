"""
Notification dispatcher client.

Delivery is best effort: failures are logged and reported as ``False``,
never raised.
"""

from typing import Optional

import httpx

from shared.logging import get_logger
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException

CONFIRMATION_TEMPLATE = "accountConfirmation"


class NotificationClient:
    """Client for the notification dispatcher."""

    def __init__(self,
                 base_url: Optional[str],
                 timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self.logger = get_logger("identity.notifications")
        self._transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            expected_exception=httpx.HTTPError,
            name="notification"
        )

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    async def send_confirmation_email(self, to_email: str, display_name: str, confirmation_link: str) -> bool:
        """Send the account confirmation email."""
        if not self.enabled:
            self.logger.info("Notification dispatcher not configured, skipping email", to=to_email)
            return False

        async def _send():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/api/v1/send-email",
                    json={
                        "to": to_email,
                        "subject": "Confirm your account",
                        "template": CONFIRMATION_TEMPLATE,
                        "context": {"name": display_name, "link": confirmation_link},
                    }
                )
                response.raise_for_status()

        try:
            await self.circuit_breaker.call(_send)
        except (httpx.HTTPError, CircuitBreakerOpenException) as e:
            self.logger.error("Failed to send confirmation email", to=to_email, error=str(e))
            return False

        self.logger.info("Confirmation email sent", to=to_email)
        return True

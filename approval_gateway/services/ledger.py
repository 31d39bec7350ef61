import uuid
import httpx
from loguru import logger
from ..core.config import settings
from ..core.errors import LedgerError

# Thin client for the ledger gateway: POST a prepared payload, get back a
# transaction reference. Transaction construction/signing happens behind the gateway.

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class HttpLedgerClient:
    """
    Submits ledger payloads over HTTP.

    Disabled mode: when no base URL is configured, submissions are not sent
    anywhere and a locally generated reference with outcome "simulated" is
    returned (local development, demos).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    def submit(self, payload: dict) -> dict:
        """
        Submit a payload to the ledger.

        Returns:
            {"reference": <transaction reference>, "outcome": <ledger outcome>}

        Raises:
            LedgerError: retryable for network errors, timeouts and 408/429/5xx;
                fatal for other 4xx, malformed responses or a reported failure.
        """
        if not self.enabled:
            reference = f"SIM_{uuid.uuid4().hex.upper()}"
            logger.debug("Ledger disabled, simulating submission", action=payload.get("action"), reference=reference)
            return {"reference": reference, "outcome": "simulated"}

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                r = client.post(f"{self.base_url}/transactions", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise LedgerError(f"Ledger request timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise LedgerError(f"Ledger network error: {e}", retryable=True) from e

        if r.status_code in RETRYABLE_STATUS_CODES:
            raise LedgerError(f"Ledger unavailable (HTTP {r.status_code})", retryable=True)
        if r.status_code >= 400:
            raise LedgerError(f"Ledger rejected request (HTTP {r.status_code}): {r.text}", retryable=False)

        try:
            body = r.json()
        except ValueError as e:
            raise LedgerError("Ledger returned a non-JSON response", retryable=False) from e
        if not isinstance(body, dict):
            raise LedgerError(f"Ledger returned an unexpected response body: {body!r}", retryable=False)

        outcome = body.get("outcome", "success")
        if outcome == "failure":
            raise LedgerError(f"Ledger reported failure: {body.get('error', 'unknown error')}", retryable=False)

        reference = body.get("reference")
        if not reference:
            raise LedgerError("Ledger response missing transaction reference", retryable=False)

        return {"reference": reference, "outcome": outcome}


def create_ledger_client() -> HttpLedgerClient:
    """Factory using environment configuration"""
    return HttpLedgerClient(
        base_url=settings.ledger_url,
        api_key=settings.ledger_api_key,
        timeout=settings.ledger_timeout_seconds,
    )

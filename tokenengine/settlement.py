"""Client for the ledger settlement collaborator.

The engine only hands over intents (mint the supply of an asset, pay a
holder). Outcomes arrive later, possibly on another process, through the
settlement callback endpoints, correlated by idempotency key. Requests
are at-least-once: the collaborator deduplicates on the key.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

import httpx

from tokenengine.config import get_settings
from tokenengine.errors import SettlementSubmissionError

logger = logging.getLogger(__name__)


class SettlementGateway(ABC):
    """Outbound side of the settlement collaborator."""

    @abstractmethod
    async def request_issuance(
        self, asset_id: str, total_supply: int, idempotency_key: str
    ) -> None:
        """Ask the collaborator to mint `total_supply` units for an asset."""

    @abstractmethod
    async def request_payout(
        self,
        payout_line_id: str,
        holder_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> None:
        """Ask the collaborator to pay `amount` to a holder's account."""


class HttpSettlementGateway(SettlementGateway):
    """Posts settlement intents over HTTP.

    A 2xx response only means the intent was accepted; the result comes
    back through a callback.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> None:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout
            ) as client:
                response = await client.post(
                    path,
                    json=payload,
                    headers={"Idempotency-Key": idempotency_key},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Settlement request failed",
                extra={"path": path, "idempotency_key": idempotency_key, "error": str(e)},
            )
            raise SettlementSubmissionError(
                f"Could not submit settlement intent {idempotency_key}: {e}",
                detail={"idempotency_key": idempotency_key},
            ) from e

    async def request_issuance(
        self, asset_id: str, total_supply: int, idempotency_key: str
    ) -> None:
        await self._post(
            "/issuances",
            {"asset_id": asset_id, "total_supply": total_supply},
            idempotency_key,
        )

    async def request_payout(
        self,
        payout_line_id: str,
        holder_id: str,
        amount: Decimal,
        idempotency_key: str,
    ) -> None:
        await self._post(
            "/payouts",
            {
                "payout_line_id": payout_line_id,
                "holder_account": holder_id,
                "amount": str(amount),
            },
            idempotency_key,
        )


def get_settlement_gateway() -> SettlementGateway:
    """FastAPI dependency returning the configured gateway."""
    settings = get_settings()
    return HttpSettlementGateway(settings.settlement_url, settings.settlement_timeout)

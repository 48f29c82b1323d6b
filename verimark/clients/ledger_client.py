import asyncio
import json
from typing import Any, Dict, Optional

import httpx

from verimark import config
from verimark.exceptions import LedgerError
from verimark.models import LedgerReceipt
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)


class LedgerClient:
    """Client for the ledger anchoring service.

    Only the narrow submit contract is used: a payload goes in as bytes, a
    transaction identifier comes back. Delivery is at-least-once, so callers
    must tolerate duplicate anchors of the same payload.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        topic_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else config.LEDGER_API_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else config.LEDGER_API_KEY
        self.topic_id = topic_id if topic_id is not None else config.LEDGER_TOPIC_ID
        self.timeout = timeout if timeout is not None else config.LEDGER_TIMEOUT_SECONDS
        self._transport = transport

        if not self.base_url:
            logger.warning("LEDGER_API_URL not set, anchoring is disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def submit(self, payload: Dict[str, Any]) -> LedgerReceipt:
        """
        Submit a payload for anchoring.

        Args:
            payload: JSON-serializable record to anchor

        Returns:
            LedgerReceipt: Transaction and topic identifiers

        Raises:
            LedgerError: If anchoring is disabled, times out or is rejected
        """
        if not self.enabled:
            raise LedgerError("Ledger anchoring is not configured")

        body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        params = {"topicId": self.topic_id} if self.topic_id else None

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await asyncio.wait_for(
                    client.post("/messages", content=body, headers=headers, params=params),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
        except asyncio.TimeoutError as e:
            raise LedgerError(f"Ledger submission timed out after {self.timeout}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"Ledger submission failed: {e}") from e

        transaction_id = data.get("transactionId") if isinstance(data, dict) else None
        if not transaction_id:
            raise LedgerError("Ledger response did not include a transactionId")

        logger.info(f"Anchored payload in transaction {transaction_id}")
        return LedgerReceipt(
            transaction_id=str(transaction_id),
            topic_id=data.get("topicId") or self.topic_id,
        )

"""
Client Cache Facade

Non-authoritative balance mirror for calling features (capture, advice,
user management, history) plus the async HTTP client they use to reach
the ledger.

Rules:
- The local check is advisory: it decides whether a remote consume is worth
  attempting, never whether an action is paid for
- The cache is never decremented locally; it is only overwritten with
  balances returned by the server (last authoritative response wins)
- Storage failures are retried here, by the caller of the ledger, with the
  same idempotency key so a retried consume is never charged twice
"""

import asyncio
import logging
import uuid
from typing import Dict, Optional

import httpx

from .config import ERROR_CODES
from .errors import InvalidAmount, StorageUnavailable, UnknownAction, UnknownPack
from .models import BalanceSnapshot, ConsumeResult, LedgerTransaction, RefillResult

logger = logging.getLogger(__name__)

API_PREFIX = "/api/diamonds"
DEFAULT_TIMEOUT_SECONDS = 5.0


class DiamondApiClient:
    """Async request/response client for the diamond ledger endpoints."""

    def __init__(
        self,
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        service_token: Optional[str] = None
    ):
        headers = {"Content-Type": "application/json"}
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers=headers
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.TimeoutException as e:
            raise StorageUnavailable(f"Timed out calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise StorageUnavailable(f"Transport error calling {path}: {e}") from e

        if response.status_code >= 500:
            raise StorageUnavailable(f"Ledger returned {response.status_code} for {path}")
        return response

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            detail = response.json().get("detail")
        except ValueError:
            return None
        return detail.get("error_code") if isinstance(detail, dict) else None

    async def get_balance(self, user_id: str) -> BalanceSnapshot:
        response = await self._request("GET", f"/{user_id}")
        response.raise_for_status()
        return BalanceSnapshot(**response.json())

    async def consume(self, user_id: str, action: str, idempotency_key: str) -> ConsumeResult:
        response = await self._request(
            "POST",
            f"/{user_id}/consume",
            json={"action": action, "idempotency_key": idempotency_key}
        )

        if response.status_code == 402:
            detail = response.json()["detail"]
            return ConsumeResult(
                ok=False,
                balance=detail["balance"],
                reason="InsufficientBalance",
                error_code=detail["error_code"]
            )
        if self._error_code(response) == "UNKNOWN_ACTION":
            raise UnknownAction(action)

        response.raise_for_status()
        return ConsumeResult(**response.json())

    async def refill(self, user_id: str) -> RefillResult:
        response = await self._request("POST", f"/{user_id}/refill")
        response.raise_for_status()
        return RefillResult(**response.json())

    async def purchase(self, user_id: str, pack_id: str, purchase_reference: str) -> int:
        response = await self._request(
            "POST",
            f"/{user_id}/purchase",
            json={"pack_id": pack_id, "purchase_reference": purchase_reference}
        )
        error_code = self._error_code(response)
        if error_code == "UNKNOWN_PACK":
            raise UnknownPack(pack_id)
        if error_code == "INVALID_AMOUNT":
            raise InvalidAmount(pack_id)

        response.raise_for_status()
        return response.json()["balance"]

    async def history(self, user_id: str, limit: int = 50) -> list:
        response = await self._request("GET", f"/{user_id}/history", params={"limit": limit})
        response.raise_for_status()
        return [LedgerTransaction(**txn) for txn in response.json()["transactions"]]

    async def action_costs(self) -> Dict[str, int]:
        response = await self._request("GET", "/actions")
        response.raise_for_status()
        return response.json()["actions"]


class ClientCacheFacade:
    """
    Fast, possibly stale balance checks for UI code, backed by the ledger.

    Usage:
        facade = ClientCacheFacade(DiamondApiClient(base_url))
        if await facade.can_afford(user_id, "camera"):
            show_capture_button()
        result = await facade.try_consume(user_id, "camera")
        if not result.ok:
            offer_purchase(result.balance)
    """

    def __init__(self, api: DiamondApiClient, max_retries: int = 2, backoff_seconds: float = 0.5):
        self.api = api
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._balances: Dict[str, int] = {}
        self._costs: Optional[Dict[str, int]] = None

    def peek(self, user_id: str) -> Optional[int]:
        """Last known balance, or None if this client never saw one."""
        return self._balances.get(user_id)

    def _adopt(self, user_id: str, balance: int) -> int:
        self._balances[user_id] = balance
        return balance

    async def refresh(self, user_id: str) -> int:
        """Fetch the authoritative balance and overwrite the cache."""
        snapshot = await self.api.get_balance(user_id)
        return self._adopt(user_id, snapshot.balance)

    async def action_costs(self) -> Dict[str, int]:
        """Cost table from the server, fetched once."""
        if self._costs is None:
            self._costs = await self.api.action_costs()
        return self._costs

    async def cost_of(self, action: str) -> int:
        costs = await self.action_costs()
        if action not in costs:
            raise UnknownAction(action)
        return costs[action]

    async def can_afford(self, user_id: str, action: str) -> bool:
        """Advisory affordability check for UI state."""
        cost = await self.cost_of(action)
        cached = self.peek(user_id)
        if cached is None:
            cached = await self.refresh(user_id)
        return cached >= cost

    async def try_consume(self, user_id: str, action: str, idempotency_key: Optional[str] = None) -> ConsumeResult:
        """
        Optimistic check, then authoritative consume.

        The returned balance (success or rejection) replaces the cached one.
        Pass the same idempotency_key to resume an attempt that raised
        StorageUnavailable.
        """
        cost = await self.cost_of(action)

        cached = self.peek(user_id)
        if cached is None or cached < cost:
            # A low cached value may predate a refill or a purchase
            cached = await self.refresh(user_id)
            if cached < cost:
                return ConsumeResult(
                    ok=False,
                    balance=cached,
                    reason="InsufficientBalance",
                    error_code="INSUFFICIENT_BALANCE"
                )

        key = idempotency_key or uuid.uuid4().hex
        result = await self._consume_with_retry(user_id, action, key)
        self._adopt(user_id, result.balance)
        return result

    async def purchase(self, user_id: str, pack_id: str, purchase_reference: str) -> int:
        balance = await self.api.purchase(user_id, pack_id, purchase_reference)
        return self._adopt(user_id, balance)

    async def _consume_with_retry(self, user_id: str, action: str, key: str) -> ConsumeResult:
        for attempt in range(self.max_retries + 1):
            try:
                return await self.api.consume(user_id, action, key)
            except StorageUnavailable as e:
                if attempt >= self.max_retries:
                    logger.warning(
                        f"Consume failed for user {user_id} after {attempt + 1} attempts: {e}"
                    )
                    raise
                wait_time = (2 ** attempt) * self.backoff_seconds
                logger.debug(f"Consume retry {attempt + 1}/{self.max_retries} for user {user_id} in {wait_time}s")
                await asyncio.sleep(wait_time)

        raise StorageUnavailable(ERROR_CODES["STORAGE_UNAVAILABLE"])

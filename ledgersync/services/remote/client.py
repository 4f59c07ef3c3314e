"""
Remote Ledger Service Client

DESIGN DECISION: One async HTTP client classifies every outcome into the
sync error taxonomy, so the executor never looks at status codes:

- 2xx with {"success": true}          -> ok
- 2xx with {"success": false}         -> PermanentValidationError
- 401                                 -> AuthenticationRequiredError
- 404 on DELETE                       -> ok (already gone)
- 408, 429, 5xx                       -> TransientNetworkError(status)
- other 4xx                           -> PermanentValidationError
- connection error / timeout          -> TransientNetworkError(None)

Writes are sent exactly once per call; their retry policy is the queue
backoff. Reads (the pull phase) are idempotent and retried in place with
tenacity.
"""

import json
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledgersync.config import get_settings
from ledgersync.errors import (
    AuthenticationRequiredError,
    PermanentValidationError,
    TransientNetworkError,
)
from ledgersync.models.ledger import (
    DEFAULT_CURRENCY,
    Account,
    Posting,
    Price,
    Tag,
    Transaction,
    Unit,
)
from ledgersync.models.mutation import MutationRecord

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Optional[str]]

_TRANSIENT_STATUSES = {408, 429}


class RemoteLedgerClient:
    """
    Async client for the remote ledger service.

    Usage:
        client = RemoteLedgerClient(token_provider=auth.current_token)
        await client.send(record)
        accounts = await client.fetch_accounts()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout_seconds: Optional[float] = None,
        read_retry_attempts: Optional[int] = None,
        page_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        read_retry_wait=None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Service root. Defaults to the remote settings.
            token_provider: Returns the current bearer token, or None.
            timeout_seconds: Per-request timeout.
            read_retry_attempts: Attempts for each GET within one pull.
            page_size: Page size for the transaction pull.
            transport: Custom httpx transport (tests use MockTransport).
            read_retry_wait: tenacity wait strategy for GET retries.
        """
        settings = get_settings().remote
        self._base_url = (base_url if base_url is not None else settings.base_url).rstrip("/")
        self._token_provider = token_provider
        self._read_attempts = read_retry_attempts or settings.read_retry_attempts
        self._page_size = page_size or settings.page_size
        self._read_wait = read_retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_seconds or settings.timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Low-level HTTP
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        path: str,
        content: Optional[bytes] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Send one request and classify the outcome.

        Returns:
            The `data` member of the response envelope (None if absent)
        """
        try:
            response = await self._client.request(
                method,
                path,
                content=content or None,
                params=params,
                headers=self._auth_headers(),
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} unreachable: {e}") from e

        return self._classify(method, path, response)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)[:200]
        return str(body)[:200]

    def _classify(self, method: str, path: str, response: httpx.Response) -> Any:
        status = response.status_code

        if status == 401:
            raise AuthenticationRequiredError(f"{method} {path} requires authentication")

        if status == 404 and method == "DELETE":
            logger.info("remote_delete_already_gone", path=path)
            return None

        if status in _TRANSIENT_STATUSES or status >= 500:
            raise TransientNetworkError(
                f"{method} {path} -> {status}: {self._error_message(response)}",
                status_code=status,
            )

        if not 200 <= status < 300:
            raise PermanentValidationError(
                f"{method} {path} -> {status}: {self._error_message(response)}",
                status_code=status,
            )

        if not response.content:
            return None

        try:
            envelope = response.json()
        except ValueError as e:
            raise PermanentValidationError(
                f"{method} {path} returned a non-JSON body", status_code=status
            ) from e

        if isinstance(envelope, dict) and "success" in envelope:
            if not envelope["success"]:
                raise PermanentValidationError(
                    f"{method} {path} rejected: {self._error_message(response)}",
                    status_code=status,
                )
            return envelope.get("data")
        return envelope

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET with in-place retries for transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=self._read_wait,
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        ):
            with attempt:
                return await self._request("GET", path, params=params)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def send(self, record: MutationRecord) -> Any:
        """
        Dispatch a queued record exactly once.

        Raises:
            TransientNetworkError: Retry later
            PermanentValidationError: Never retry
            AuthenticationRequiredError: Token must be refreshed first
        """
        logger.debug("remote_send", **record.to_log_dict())
        return await self._request(record.method, record.endpoint, content=record.payload)

    async def ping(self) -> bool:
        """True if the service answered at all."""
        try:
            await self._request("GET", "/health")
            return True
        except TransientNetworkError as e:
            return not e.is_unreachable
        except (PermanentValidationError, AuthenticationRequiredError):
            return True

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_accounts(self) -> list[Account]:
        return [parse_account(item) for item in await self._get("/accounts") or []]

    async def fetch_tags(self) -> list[Tag]:
        return [parse_tag(item) for item in await self._get("/tags") or []]

    async def fetch_units(self) -> list[Unit]:
        return [parse_unit(item) for item in await self._get("/units") or []]

    async def fetch_transactions(self) -> list[Transaction]:
        """
        Fetch every transaction page by page.

        Stops on an empty page or a page shorter than the page size.
        """
        transactions: list[Transaction] = []
        offset = 0
        while True:
            data = await self._get(
                "/transactions",
                params={"limit": self._page_size, "offset": offset},
            )
            batch = (data or {}).get("data", []) if isinstance(data, dict) else (data or [])
            if not batch:
                break

            transactions.extend(parse_transaction(item) for item in batch)
            if len(batch) < self._page_size:
                break
            offset += self._page_size

        logger.info("remote_transactions_fetched", count=len(transactions))
        return transactions

    async def lookup_price(self, unit_code: str, on: Optional[date] = None) -> Optional[Price]:
        """
        Look up a unit's price on a date (today when omitted).

        Returns:
            The price, or None when the service has none
        """
        params = {"unit_code": unit_code}
        if on is not None:
            params["date"] = on.isoformat()
        try:
            data = await self._get("/prices/lookup", params=params)
        except PermanentValidationError as e:
            if e.status_code == 404:
                return None
            raise
        if not data or data.get("price") in (None, ""):
            return None
        return Price(
            unit_code=unit_code,
            date=on or date.today(),
            price=_decimal(data["price"]),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            source=data.get("source"),
        )


# =============================================================================
# WIRE -> ENTITY PARSING
# =============================================================================

def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PermanentValidationError(f"Invalid decimal from remote: {value!r}") from e


def parse_account(item: dict) -> Account:
    metadata = item.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata) if metadata else None
    return Account(
        id=item["id"],
        name=item["name"],
        category=item["category"],
        type=item["type"],
        # The backend omits currency for most accounts
        currency=item.get("currency") or DEFAULT_CURRENCY,
        icon=item.get("icon"),
        parent_id=item.get("parent_id"),
        related_account_id=item.get("related_account_id"),
        metadata=metadata,
    )


def parse_tag(item: dict) -> Tag:
    return Tag(
        id=str(item["id"]),
        name=item["name"],
        description=item.get("description"),
        color=item.get("color"),
    )


def parse_unit(item: dict) -> Unit:
    return Unit(
        code=item["code"],
        name=item["name"],
        symbol=item.get("symbol"),
        type=item.get("type") or "currency",
    )


def parse_transaction(item: dict) -> Transaction:
    postings = []
    for p in item.get("postings") or []:
        amount = _decimal(p["amount"])
        quantity = p.get("quantity")
        postings.append(Posting(
            id=UUID(str(p["id"])) if p.get("id") else uuid4(),
            account_id=p["account_id"],
            account_name=p.get("account_name"),
            amount=amount,
            quantity=_decimal(quantity) if quantity not in (None, "") else amount,
            unit_code=p.get("unit_code"),
            tag_ids=[str(t) for t in p.get("tag_ids") or []],
        ))
    return Transaction(
        id=UUID(str(item["id"])),
        date=date.fromisoformat(str(item["date"])[:10]),
        description=item.get("description") or "",
        note=item.get("note"),
        postings=postings,
    )

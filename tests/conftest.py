"""
Shared fixtures for LedgerSync tests.

- A temporary SQLite ledger per test
- A controllable clock so backoff is tested without sleeping
- A fake remote ledger service behind httpx.MockTransport
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from tenacity import wait_none

from ledgersync.models.ledger import Account, Posting, Transaction
from ledgersync.models.mutation import RetryPolicy
from ledgersync.models.requests import MutationCodec
from ledgersync.services.remote import RemoteLedgerClient
from ledgersync.services.storage import SQLiteLedgerStore
from ledgersync.sync.queue import MutationQueue


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeLedgerServer:
    """
    In-memory stand-in for the remote ledger service.

    Write requests consume `script` outcomes in order (an HTTP status, or
    "offline" / "timeout"); once the script is empty they get
    `default_status`. GET requests serve the remote collections.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.script: list = []
        self.default_status = 200
        self.get_script: list = []
        self.accounts: list[dict] = []
        self.tags: list[dict] = []
        self.units: list[dict] = []
        self.transactions: list[dict] = []
        self.prices: dict[str, str] = {}

    @property
    def writes(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method != "GET"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            if self.get_script:
                return self._outcome(request, self.get_script.pop(0))
            return self._get(request)
        outcome = self.script.pop(0) if self.script else self.default_status
        return self._outcome(request, outcome)

    def _outcome(self, request: httpx.Request, outcome) -> httpx.Response:
        if outcome == "offline":
            raise httpx.ConnectError("connection refused", request=request)
        if outcome == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        ok = 200 <= outcome < 300
        return httpx.Response(
            outcome,
            json={"success": ok, "data": None} if ok else {"success": False, "error": "rejected"},
        )

    def _get(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/accounts":
            return httpx.Response(200, json={"success": True, "data": self.accounts})
        if path == "/tags":
            return httpx.Response(200, json={"success": True, "data": self.tags})
        if path == "/units":
            return httpx.Response(200, json={"success": True, "data": self.units})
        if path == "/transactions":
            limit = int(request.url.params.get("limit", 50))
            offset = int(request.url.params.get("offset", 0))
            page = self.transactions[offset:offset + limit]
            return httpx.Response(200, json={
                "success": True,
                "data": {"data": page, "total": len(self.transactions)},
            })
        if path == "/prices/lookup":
            code = request.url.params.get("unit_code")
            if code not in self.prices:
                return httpx.Response(404, json={"success": False, "error": "no price"})
            return httpx.Response(200, json={"success": True, "data": {"price": self.prices[code]}})
        if path == "/health":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"success": False, "error": "unknown path"})


def make_transaction(amounts=("100", "-100"), description="Groceries", **kwargs) -> Transaction:
    """A transaction with one posting per amount."""
    accounts = ["Expenses:Food", "Assets:Bank", "Assets:Cash", "Income:Salary"]
    return Transaction(
        date=kwargs.pop("tx_date", date(2024, 1, 1)),
        description=description,
        postings=[
            Posting(account_id=accounts[i % len(accounts)], amount=Decimal(amount))
            for i, amount in enumerate(amounts)
        ],
        **kwargs,
    )


def make_account(account_id="Assets:Bank", **kwargs) -> Account:
    return Account(
        id=account_id,
        name=kwargs.pop("name", account_id.split(":")[-1]),
        category=kwargs.pop("category", account_id.split(":")[0]),
        type=kwargs.pop("type", "bank"),
        **kwargs,
    )


def remote_transaction(tx_id=None, description="Remote", amount="50") -> dict:
    return {
        "id": str(tx_id or uuid4()),
        "date": "2024-01-02",
        "description": description,
        "postings": [
            {"id": str(uuid4()), "account_id": "Expenses:Food", "amount": amount, "quantity": amount},
            {"id": str(uuid4()), "account_id": "Assets:Bank", "amount": f"-{amount}", "quantity": f"-{amount}"},
        ],
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SQLiteLedgerStore:
    store = SQLiteLedgerStore(tmp_path / "ledger.db")
    yield store
    store.close()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy()


@pytest.fixture
def queue(store, policy, clock) -> MutationQueue:
    return MutationQueue(store, policy, clock=clock)


@pytest.fixture
def codec() -> MutationCodec:
    return MutationCodec()


@pytest.fixture
def server() -> FakeLedgerServer:
    return FakeLedgerServer()


def build_remote(handler) -> RemoteLedgerClient:
    """A client wired to a MockTransport handler (sync or async)."""
    return RemoteLedgerClient(
        base_url="http://ledger.test",
        token_provider=lambda: "test-token",
        read_retry_attempts=2,
        page_size=2,
        transport=httpx.MockTransport(handler),
        read_retry_wait=wait_none(),
    )


@pytest.fixture
def remote(server) -> RemoteLedgerClient:
    return build_remote(server.handler)

from __future__ import annotations

from decimal import Decimal
import json
from typing import Any, Self, cast

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from txnsync.core.errors import MalformedResponseError
from txnsync.infra.clients.auth import CredentialProvider
from txnsync.infra.clients.executor import ApiRequest, RequestExecutor

ACCOUNTS_PATH = "/data/v1/accounts"
TRANSACTIONS_PATH = "/data/v1/transactions"


class ApiBaseModel(BaseModel):
    """Shared base for API response models with a short parse alias."""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class ApiInsights(ApiBaseModel):
    """Classification the provider attached to a transaction, if any."""

    category: str | None = None
    category_confidence: float | None = None
    description: str | None = None


class ApiTransaction(ApiBaseModel):
    id: str | None = None
    transaction_id: str | None = None
    amount: Decimal = Decimal("0")
    description: str | None = None
    timestamp: str | None = None
    date: str | None = None
    currency_code: str | None = None
    pending: bool = False
    insights: ApiInsights | None = None

    @property
    def raw_occurred_at(self) -> str | None:
        return self.timestamp or self.date


class ApiAccount(ApiBaseModel):
    account_id: str | None = None
    id: str | None = None
    name: str | None = None
    type: str | None = None
    currency_code: str | None = None
    balance: Decimal | None = None
    bank_identifier: str | None = None
    bank_name: str | None = None
    owner_name: str | None = None

    @property
    def identifier(self) -> str | None:
        return self.account_id or self.id


class AccountsPayload(ApiBaseModel):
    accounts: list[ApiAccount] = Field(default_factory=list)


class AccountsEnvelope(ApiBaseModel):
    payload: AccountsPayload | None = None


class TransactionsPayload(ApiBaseModel):
    transactions: list[ApiTransaction] = Field(default_factory=list)
    total_count: int | None = None
    has_more: bool | None = Field(default=None, alias="hasMore")


class TransactionsEnvelope(ApiBaseModel):
    payload: TransactionsPayload | None = None


class BankDataClient:
    """Thin client for the accounts and transactions data endpoints."""

    def __init__(
        self,
        executor: RequestExecutor,
        credentials: CredentialProvider,
        *,
        base_url: str,
        scope: str = "api",
    ) -> None:
        self._executor = executor
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._scope = scope

    async def post_accounts(self, entity_id: str) -> AccountsPayload:
        """Call the accounts endpoint. A missing payload parses as empty."""
        body = await self._post(ACCOUNTS_PATH, {"entity_id": entity_id})
        try:
            envelope = AccountsEnvelope.parse(body)
        except ValidationError as e:
            raise MalformedResponseError(f"Unexpected accounts envelope: {e}") from e
        return envelope.payload or AccountsPayload()

    async def post_transactions(
        self,
        *,
        entity_id: str,
        account_id: str,
        from_date: str,
        to_date: str,
        limit: int,
        offset: int,
    ) -> TransactionsPayload:
        """Call the transactions endpoint for one account and one page."""
        request_body: dict[str, Any] = {
            "entity_id": entity_id,
            "account_id": account_id,
            "from_date": from_date,
            "to_date": to_date,
            "limit": limit,
            "offset": offset,
        }
        body = await self._post(TRANSACTIONS_PATH, request_body)
        try:
            envelope = TransactionsEnvelope.parse(body)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Unexpected transactions envelope: {e}"
            ) from e
        return envelope.payload or TransactionsPayload()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        token = await self._credentials.get_token()
        request = ApiRequest(
            url=self._base_url + path,
            body=payload,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {token}",
                "Scope": self._scope,
            },
        )
        response = await self._executor.execute(request)
        return self._parse_json_response(response.text)

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                f"Failed to parse response as JSON: {e}: {body[:500]}"
            ) from e
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(data).__name__}"
            )
        return cast(dict[str, Any], data)

"""
FSM GraphQL client.

Authenticated RPC to the field-service-management API with:
- per-account OAuth token refresh (single-flight per account),
- 429 handling honoring Retry-After with capped exponential growth,
- circuit breaker protection,
- typed results per operation (see schemas.py).

Absent objects raise FSMNotFoundError; responses missing the fields an
operation needs raise FSMMalformedResponseError; mutation userErrors raise
FSMUserError.
"""
from __future__ import annotations

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import CircuitBreaker, get_fsm_circuit_breaker
from app.core.config import settings
from app.core.exceptions import (
    FSMAPIError,
    FSMAuthError,
    FSMMalformedResponseError,
    FSMNotFoundError,
    FSMRateLimitedError,
    FSMUserError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.core.time_utils import utcnow
from app.db.models.fsm_account import FSMAccount
from app.domain.services.fsm.custom_fields import CustomFieldRegistry, custom_field_registry
from app.domain.services.fsm.schemas import (
    ClientJob,
    CustomFieldConfiguration,
    Invoice,
    Job,
    LineItem,
    MutationResult,
    Payment,
    Quote,
    Visit,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_REFRESH_LOCK_TTL_SECONDS = 30
_REFRESH_LOCK_WAIT_SECONDS = 10.0
_REFRESH_LOCK_POLL_SECONDS = 0.2

# event loop -> account id -> lock. Celery tasks run on their own loops; an
# entry goes away with its loop.
_refresh_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def _refresh_lock(account_id: str) -> asyncio.Lock:
    loop_locks = _refresh_locks.setdefault(asyncio.get_running_loop(), {})
    return loop_locks.setdefault(account_id, asyncio.Lock())


GRAPHQL_DOCUMENTS: dict[str, str] = {
    "GetQuote": """
        query GetQuote($id: EncodedId!) {
          quote(id: $id) {
            id quoteNumber title quoteStatus createdAt
            client { id name }
            job { id }
            convertedTo { job { id } }
            lineItems { nodes { id name description quantity unitPrice total } }
            amounts { total subtotal depositAmount }
          }
        }
    """,
    "GetJob": """
        query GetJob($id: EncodedId!) {
          job(id: $id) {
            id title jobNumber jobStatus createdAt
            client { id name }
            property { id customFields { nodes { label value } } }
            jobType { name }
            quote { id }
            assignedUsers { nodes { id name } }
            lineItems { nodes { id name description quantity unitPrice total } }
            amounts { total subtotal outstanding depositAmount }
          }
        }
    """,
    "GetVisit": """
        query GetVisit($id: EncodedId!) {
          visit(id: $id) {
            id title status duration completedAt
            job { id }
            timeEntries { nodes { id duration } }
          }
        }
    """,
    "GetClientJobs": """
        query GetClientJobs($clientId: EncodedId!, $first: Int!) {
          client(id: $clientId) {
            id
            jobs(first: $first, sortBy: { field: CREATED_AT, direction: DESC }) {
              nodes { id title createdAt }
            }
          }
        }
    """,
    "GetInvoice": """
        query GetInvoice($id: EncodedId!) {
          invoice(id: $id) {
            id invoiceNumber subject paymentStatus
            amounts { total paid outstanding subtotal }
            job { id }
            client { id name }
          }
        }
    """,
    "GetInvoicePayments": """
        query GetInvoicePayments($id: EncodedId!) {
          invoice(id: $id) {
            id
            payments { nodes { id amount paymentMethod paymentDate note } }
          }
        }
    """,
    "GetPayment": """
        query GetPayment($id: EncodedId!) {
          payment(id: $id) {
            id amount paymentMethod paymentDate note
            invoice { id }
          }
        }
    """,
    "GetCustomFieldConfigurations": """
        query GetCustomFieldConfigurations {
          customFieldConfigurations(first: 100) {
            nodes { id label type applicableTo }
          }
        }
    """,
    "UpdateJobLineItems": """
        mutation UpdateJobLineItems($jobId: EncodedId!, $lineItems: [LineItemInput!]!) {
          jobEdit(jobId: $jobId, lineItems: $lineItems) {
            job { id }
            userErrors { message path }
          }
        }
    """,
    "SetJobCustomField": """
        mutation SetJobCustomField($jobId: EncodedId!, $customFieldValues: [CustomFieldValueInput!]!) {
          jobEdit(jobId: $jobId, customFieldValues: $customFieldValues) {
            job { id }
            userErrors { message path }
          }
        }
    """,
    "AddJobNote": """
        mutation AddJobNote($input: NoteCreateInput!) {
          noteCreate(input: $input) {
            note { id }
            userErrors { message path }
          }
        }
    """,
    "CreateInvoice": """
        mutation CreateInvoice($input: InvoiceCreateInput!) {
          invoiceCreate(input: $input) {
            invoice { id invoiceNumber }
            userErrors { message path }
          }
        }
    """,
    "SendInvoice": """
        mutation SendInvoice($invoiceId: EncodedId!, $deliveryMethod: InvoiceDeliveryMethod!) {
          invoiceSend(invoiceId: $invoiceId, deliveryMethod: $deliveryMethod) {
            invoice { id }
            userErrors { message path }
          }
        }
    """,
}


class FSMClient:
    """GraphQL client bound to one FSM account"""

    def __init__(
        self,
        account_id: str,
        db: AsyncSession,
        *,
        http_client: httpx.AsyncClient | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        field_registry: CustomFieldRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self._db = db
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or get_fsm_circuit_breaker()
        self._field_registry = field_registry or custom_field_registry
        self._sleep = sleep

    # ── auth ──

    async def _load_account(self) -> FSMAccount:
        result = await self._db.execute(
            select(FSMAccount).where(FSMAccount.account_id == self.account_id)
        )
        account = result.scalar_one_or_none()
        if account is None or not account.access_token:
            raise FSMAuthError(self.account_id, "account is not connected")
        return account

    @staticmethod
    def _token_is_fresh(account: FSMAccount) -> bool:
        if account.token_expires_at is None:
            return True
        buffer = timedelta(seconds=settings.FSM_TOKEN_REFRESH_BUFFER_SECONDS)
        return account.token_expires_at > utcnow() + buffer

    async def _get_access_token(self) -> str:
        account = await self._load_account()
        if self._token_is_fresh(account):
            return account.access_token

        async with _refresh_lock(self.account_id):
            async with self._cross_process_refresh_lock():
                # Another refresher may have finished while we waited
                await self._db.refresh(account)
                if self._token_is_fresh(account):
                    return account.access_token
                return await self._refresh_token(account)

    @asynccontextmanager
    async def _cross_process_refresh_lock(self) -> AsyncIterator[None]:
        """Best-effort Redis lock so two processes do not refresh the same account at once"""
        lock_key = f"fsm:token_refresh:{self.account_id}"
        lock_token = uuid.uuid4().hex
        redis = None
        acquired = False
        try:
            redis = await get_redis()
            deadline = asyncio.get_running_loop().time() + _REFRESH_LOCK_WAIT_SECONDS
            while not acquired:
                acquired = bool(
                    await redis.set(lock_key, lock_token, nx=True, ex=_REFRESH_LOCK_TTL_SECONDS)
                )
                if acquired or asyncio.get_running_loop().time() >= deadline:
                    break
                await asyncio.sleep(_REFRESH_LOCK_POLL_SECONDS)
        except (RedisError, OSError) as e:
            logger.warning(
                "Token refresh lock unavailable, refreshing without it",
                extra_data={"account_id": self.account_id, "error": str(e)},
            )

        try:
            yield
        finally:
            if acquired and redis is not None:
                try:
                    if await redis.get(lock_key) == lock_token:
                        await redis.delete(lock_key)
                except (RedisError, OSError) as e:
                    logger.warning(
                        "Failed to release token refresh lock",
                        extra_data={"account_id": self.account_id, "error": str(e)},
                    )

    async def _refresh_token(self, account: FSMAccount) -> str:
        if not settings.FSM_CLIENT_ID or not settings.FSM_CLIENT_SECRET:
            raise FSMAuthError(self.account_id, "FSM_CLIENT_ID / FSM_CLIENT_SECRET not configured")
        if not account.refresh_token:
            raise FSMAuthError(self.account_id, "no refresh token stored")

        logger.info("Refreshing FSM access token", extra_data={"account_id": self.account_id})
        form = {
            "grant_type": "refresh_token",
            "client_id": settings.FSM_CLIENT_ID,
            "client_secret": settings.FSM_CLIENT_SECRET,
            "refresh_token": account.refresh_token,
        }
        async with self._http() as client:
            try:
                response = await client.post(settings.FSM_OAUTH_TOKEN_URL, data=form)
            except httpx.TimeoutException:
                raise ServiceTimeoutError("fsm", settings.FSM_REQUEST_TIMEOUT_SECONDS)
            except httpx.RequestError as e:
                raise FSMAPIError(f"token refresh network error: {e}")

        if response.status_code != 200:
            if response.status_code >= 500:
                raise FSMAPIError.from_response("TokenRefresh", response)
            raise FSMAuthError(self.account_id, f"token refresh returned {response.status_code}")

        try:
            token_data = response.json()
            access_token = token_data["access_token"]
            expires_in = int(token_data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise FSMMalformedResponseError("TokenRefresh", str(e))

        account.access_token = access_token
        account.refresh_token = token_data.get("refresh_token") or account.refresh_token
        account.token_expires_at = utcnow() + timedelta(seconds=expires_in)
        await self._db.commit()

        logger.info("FSM access token refreshed", extra_data={"account_id": self.account_id})
        return access_token

    # ── transport ──

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=settings.FSM_REQUEST_TIMEOUT_SECONDS) as client:
            yield client

    async def query(self, operation: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a named GraphQL operation and return its ``data`` object"""
        document = GRAPHQL_DOCUMENTS.get(operation)
        if document is None:
            raise ValueError(f"Unknown FSM operation: {operation}")

        access_token = await self._get_access_token()
        return await self._circuit_breaker.execute(
            self._post_with_rate_limit, operation, document, variables or {}, access_token
        )

    async def _post_with_rate_limit(
        self,
        operation: str,
        document: str,
        variables: dict[str, Any],
        access_token: str,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "X-JOBBER-GRAPHQL-VERSION": settings.FSM_API_VERSION,
        }
        body = {"query": document, "variables": variables}
        max_attempts = settings.FSM_MAX_ATTEMPTS
        waited = 0.0

        async with self._http() as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await client.post(settings.FSM_GRAPHQL_URL, json=body, headers=headers)
                except httpx.TimeoutException:
                    raise ServiceTimeoutError("fsm", settings.FSM_REQUEST_TIMEOUT_SECONDS)
                except httpx.RequestError as e:
                    raise FSMAPIError(
                        f"{operation} network error: {e}",
                        details={"operation": operation, "network_error": True},
                    )

                if response.status_code == 429:
                    remaining = settings.FSM_RATE_LIMIT_MAX_TOTAL_WAIT_SECONDS - waited
                    if attempt >= max_attempts or remaining <= 0:
                        raise FSMRateLimitedError(operation, attempt, waited)
                    delay = min(_retry_after_seconds(response) * 2 ** (attempt - 1), remaining)
                    logger.warning(
                        "FSM API rate limited, backing off",
                        extra_data={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "backoff_seconds": delay,
                        },
                    )
                    await self._sleep(delay)
                    waited += delay
                    continue

                if response.status_code == 401:
                    raise FSMAuthError(self.account_id, f"{operation} unauthorized")
                if response.status_code != 200:
                    raise FSMAPIError.from_response(operation, response)

                return _extract_data(operation, response)

        raise FSMRateLimitedError(operation, max_attempts, waited)

    # ── reads ──

    async def get_quote(self, quote_id: str) -> Quote:
        data = await self.query("GetQuote", {"id": quote_id})
        return _parse_node(Quote, data, "quote", "GetQuote", quote_id)

    async def get_job(self, job_id: str) -> Job:
        data = await self.query("GetJob", {"id": job_id})
        return _parse_node(Job, data, "job", "GetJob", job_id)

    async def get_visit(self, visit_id: str) -> Visit:
        data = await self.query("GetVisit", {"id": visit_id})
        return _parse_node(Visit, data, "visit", "GetVisit", visit_id)

    async def get_client_jobs(self, client_id: str, first: int = 10) -> list[ClientJob]:
        data = await self.query("GetClientJobs", {"clientId": client_id, "first": first})
        client = data.get("client")
        if client is None:
            raise FSMNotFoundError("client", client_id)
        nodes = (client.get("jobs") or {}).get("nodes") or []
        return _parse_list(ClientJob, nodes, "GetClientJobs")

    async def get_invoice(self, invoice_id: str) -> Invoice:
        data = await self.query("GetInvoice", {"id": invoice_id})
        return _parse_node(Invoice, data, "invoice", "GetInvoice", invoice_id)

    async def get_invoice_payments(self, invoice_id: str) -> list[Payment]:
        data = await self.query("GetInvoicePayments", {"id": invoice_id})
        invoice = data.get("invoice")
        if invoice is None:
            raise FSMNotFoundError("invoice", invoice_id)
        payments = invoice.get("payments")
        if payments is None:
            raise FSMMalformedResponseError("GetInvoicePayments", "payments missing")
        return _parse_list(Payment, payments.get("nodes") or [], "GetInvoicePayments")

    async def get_payment(self, payment_id: str) -> Payment:
        data = await self.query("GetPayment", {"id": payment_id})
        return _parse_node(Payment, data, "payment", "GetPayment", payment_id)

    async def get_custom_field_configurations(self) -> list[CustomFieldConfiguration]:
        data = await self.query("GetCustomFieldConfigurations")
        configs = data.get("customFieldConfigurations")
        if configs is None:
            raise FSMMalformedResponseError("GetCustomFieldConfigurations", "customFieldConfigurations missing")
        return _parse_list(CustomFieldConfiguration, configs.get("nodes") or [], "GetCustomFieldConfigurations")

    # ── writes ──

    async def update_job_line_items(self, job_id: str, line_items: list[LineItem]) -> MutationResult:
        variables = {
            "jobId": job_id,
            "lineItems": [
                {
                    "name": item.name,
                    "description": item.description or "",
                    "quantity": str(item.quantity),
                    "unitCost": str(item.unit_price),
                }
                for item in line_items
            ],
        }
        data = await self.query("UpdateJobLineItems", variables)
        return _mutation_result(data, "jobEdit", "job", "UpdateJobLineItems")

    async def set_job_custom_field(self, job_id: str, label: str, value: str) -> MutationResult:
        """Write a custom field by its label; raises CustomFieldMissingError if not configured"""
        field_id = await self._field_registry.resolve(self, label)
        variables = {
            "jobId": job_id,
            "customFieldValues": [{"customFieldId": field_id, "valueText": value}],
        }
        data = await self.query("SetJobCustomField", variables)
        return _mutation_result(data, "jobEdit", "job", "SetJobCustomField")

    async def add_job_note(self, job_id: str, message: str) -> MutationResult:
        data = await self.query("AddJobNote", {"input": {"linkedToId": job_id, "message": message}})
        return _mutation_result(data, "noteCreate", "note", "AddJobNote")

    async def create_invoice(self, job_id: str, line_items: list[LineItem]) -> MutationResult:
        variables = {
            "input": {
                "jobId": job_id,
                "lineItems": [
                    {
                        "name": item.name,
                        "description": item.description or "",
                        "quantity": str(item.quantity),
                        "unitCost": str(item.unit_price),
                    }
                    for item in line_items
                ],
            }
        }
        data = await self.query("CreateInvoice", variables)
        result = _mutation_result(data, "invoiceCreate", "invoice", "CreateInvoice")
        if not result.object_id:
            raise FSMMalformedResponseError("CreateInvoice", "invoice id missing")
        return result

    async def send_invoice(self, invoice_id: str, delivery_method: str = "EMAIL") -> MutationResult:
        data = await self.query(
            "SendInvoice", {"invoiceId": invoice_id, "deliveryMethod": delivery_method}
        )
        return _mutation_result(data, "invoiceSend", "invoice", "SendInvoice")


def _retry_after_seconds(response: httpx.Response) -> float:
    raw = response.headers.get("Retry-After")
    try:
        value = float(raw) if raw is not None else settings.FSM_RATE_LIMIT_DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        value = settings.FSM_RATE_LIMIT_DEFAULT_RETRY_AFTER_SECONDS
    return max(value, 0.0)


def _extract_data(operation: str, response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as e:
        raise FSMMalformedResponseError(operation, f"invalid JSON: {e}")
    if not isinstance(payload, dict):
        raise FSMMalformedResponseError(operation, "response is not an object")

    errors = payload.get("errors")
    if errors:
        messages = [str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors]
        raise FSMAPIError(
            f"{operation} GraphQL errors: {', '.join(messages)}",
            details={"operation": operation, "errors": messages},
        )

    data = payload.get("data")
    if not isinstance(data, dict):
        raise FSMMalformedResponseError(operation, "data missing")
    return data


def _parse_node(model: type[M], data: dict[str, Any], key: str, operation: str, identifier: str) -> M:
    node = data.get(key)
    if node is None:
        raise FSMNotFoundError(key, identifier)
    try:
        return model.model_validate(node)
    except ValidationError as e:
        raise FSMMalformedResponseError(operation, str(e))


def _parse_list(model: type[M], nodes: list[Any], operation: str) -> list[M]:
    try:
        return [model.model_validate(node) for node in nodes]
    except ValidationError as e:
        raise FSMMalformedResponseError(operation, str(e))


def _mutation_result(data: dict[str, Any], root: str, object_key: str, operation: str) -> MutationResult:
    payload = data.get(root)
    if not isinstance(payload, dict):
        raise FSMMalformedResponseError(operation, f"{root} missing")

    try:
        result = MutationResult(
            object_id=(payload.get(object_key) or {}).get("id"),
            user_errors=payload.get("userErrors") or [],
        )
    except (ValidationError, AttributeError) as e:
        raise FSMMalformedResponseError(operation, str(e))
    if not result.ok:
        raise FSMUserError(operation, result.error_messages)
    return result

"""Async GraphQL client for the upstream commerce platform's billing API.

Both calls are fire-and-forget from the engine's point of view: the
response only acknowledges that the platform accepted the request.  Charge
outcomes arrive later as separate inbound reports.

Errors are mapped onto the engine's taxonomy:

* timeouts, connection errors, HTTP 429 and 5xx raise
  :class:`~billing_engine.errors.UpstreamTransportError` (retryable);
* GraphQL ``THROTTLED`` errors are treated the same way;
* other HTTP 4xx, top-level GraphQL ``errors`` and mutation ``userErrors``
  raise :class:`~billing_engine.errors.UpstreamRejectedError` (a
  configuration defect, never retried).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from billing_engine.config import BillingSettings
from billing_engine.errors import UpstreamRejectedError, UpstreamTransportError
from billing_engine.models.charge import BulkChargeRequest, IndividualChargeRequest

logger = logging.getLogger(__name__)

_TOKEN_HEADER = "X-Shopify-Access-Token"

_BULK_CHARGE_MUTATION = """
mutation subscriptionBillingCycleBulkCharge(
  $billingAttemptExpectedDateRange: SubscriptionBillingCyclesDateRangeSelector!,
  $filters: SubscriptionBillingCycleBulkFilters
) {
  subscriptionBillingCycleBulkCharge(
    billingAttemptExpectedDateRange: $billingAttemptExpectedDateRange,
    filters: $filters
  ) {
    job { id done }
    userErrors { field message code }
  }
}
""".strip()

_BILLING_ATTEMPT_MUTATION = """
mutation subscriptionBillingAttemptCreate(
  $subscriptionContractId: ID!,
  $subscriptionBillingAttemptInput: SubscriptionBillingAttemptInput!
) {
  subscriptionBillingAttemptCreate(
    subscriptionContractId: $subscriptionContractId,
    subscriptionBillingAttemptInput: $subscriptionBillingAttemptInput
  ) {
    subscriptionBillingAttempt { id }
    userErrors { field message code }
  }
}
""".strip()


def _error_code(error: dict[str, Any]) -> Any:
    extensions = error.get("extensions")
    return extensions.get("code") if isinstance(extensions, dict) else None


class UpstreamBillingClient:
    """Thin async wrapper around the platform's billing mutations.

    Parameters
    ----------
    endpoint_template:
        GraphQL endpoint URL with a ``{tenant}`` placeholder, e.g.
        ``https://{tenant}/admin/api/2024-07/graphql.json``.
    access_token:
        Token sent in the platform's access-token header.  Requests are sent
        without it when empty.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Pre-built ``httpx.AsyncClient`` (tests pass one backed by
        ``httpx.MockTransport``).  A client passed in is not closed by
        :meth:`close`.
    """

    def __init__(
        self,
        endpoint_template: str,
        access_token: str | None = None,
        timeout: float = 15.0,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint_template = endpoint_template
        self._owns_client = http_client is None
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers[_TOKEN_HEADER] = access_token
        self._headers = headers
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> UpstreamBillingClient:
        token = settings.upstream_access_token.get_secret_value() if settings.upstream_access_token else None
        if token is None:
            logger.warning("No upstream access token configured; upstream calls will be unauthenticated")
        return cls(settings.upstream_graphql_url, token, settings.upstream_timeout)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool if this client created it."""
        if self._owns_client:
            await self._client.aclose()

    # -- Mutations -----------------------------------------------------------

    async def bulk_charge(self, tenant_id: str, request: BulkChargeRequest) -> str | None:
        """Ask the platform to charge every eligible cycle in the request window.

        Returns the platform's asynchronous job id, when it reports one.
        """
        filters = request.filters
        variables = {
            "billingAttemptExpectedDateRange": {
                "startDate": request.start_date.isoformat(),
                "endDate": request.end_date.isoformat(),
            },
            "filters": {
                "contractStatus": [s.value for s in filters.contract_statuses],
                "billingCycleStatus": [s.value for s in filters.billing_cycle_statuses],
                "billingAttemptStatus": filters.billing_attempt_status.value,
            },
        }
        payload = await self._mutate(
            tenant_id,
            _BULK_CHARGE_MUTATION,
            variables,
            root="subscriptionBillingCycleBulkCharge",
            idempotency_key=request.idempotency_key,
        )
        job = payload.get("job") or {}
        return job.get("id")

    async def charge_contract(self, tenant_id: str, request: IndividualChargeRequest) -> str | None:
        """Create one billing attempt for a contract's cycle at ``origin_time``.

        Returns the platform's billing attempt id, when it reports one.
        """
        variables = {
            "subscriptionContractId": request.contract_id,
            "subscriptionBillingAttemptInput": {
                "idempotencyKey": request.idempotency_key,
                "originTime": request.origin_time.isoformat(),
            },
        }
        payload = await self._mutate(
            tenant_id,
            _BILLING_ATTEMPT_MUTATION,
            variables,
            root="subscriptionBillingAttemptCreate",
            idempotency_key=request.idempotency_key,
        )
        attempt = payload.get("subscriptionBillingAttempt") or {}
        return attempt.get("id")

    # -- Internal helpers ----------------------------------------------------

    async def _mutate(
        self,
        tenant_id: str,
        query: str,
        variables: dict[str, Any],
        *,
        root: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        url = self._endpoint_template.format(tenant=tenant_id)
        headers = {**self._headers, "Idempotency-Key": idempotency_key}

        try:
            response = await self._client.post(url, json={"query": query, "variables": variables}, headers=headers)
        except httpx.TimeoutException as exc:
            raise UpstreamTransportError(f"{root} timed out for tenant={tenant_id}: {exc}") from exc
        except httpx.RequestError as exc:
            raise UpstreamTransportError(f"{root} could not reach upstream for tenant={tenant_id}: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise UpstreamTransportError(
                f"{root} returned HTTP {status} for tenant={tenant_id}",
                status_code=status,
            )
        if status >= 400:
            raise UpstreamRejectedError(f"{root} returned HTTP {status} for tenant={tenant_id}: {response.text[:500]}")

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamTransportError(f"{root} returned a non-JSON body for tenant={tenant_id}") from exc

        if not isinstance(body, dict):
            raise UpstreamTransportError(f"{root} returned a malformed body for tenant={tenant_id}")

        errors = body.get("errors")
        if errors:
            if not isinstance(errors, list):
                errors = [errors]
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            if any(isinstance(e, dict) and _error_code(e) == "THROTTLED" for e in errors):
                raise UpstreamTransportError(f"{root} throttled for tenant={tenant_id}: {messages}")
            raise UpstreamRejectedError(f"{root} failed for tenant={tenant_id}: {messages}")

        data = body.get("data")
        payload = data.get(root) if isinstance(data, dict) else None
        if not isinstance(payload, dict):
            raise UpstreamTransportError(f"{root} returned no mutation payload for tenant={tenant_id}")
        user_errors = payload.get("userErrors") or []
        if user_errors:
            raise UpstreamRejectedError(
                f"{root} rejected for tenant={tenant_id}: "
                + "; ".join(str(e.get("message", "")) if isinstance(e, dict) else str(e) for e in user_errors),
                user_errors=user_errors,
            )

        logger.debug("%s accepted for tenant=%s (key=%s)", root, tenant_id, idempotency_key)
        return payload

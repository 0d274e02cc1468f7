"""Inbound billing attempt outcome webhooks.

The upstream platform posts one JSON report per billing attempt, signed
with ``X-Billing-Signature: sha256=<hex>`` (HMAC-SHA256 of the raw body
with the shared webhook secret).  Verified reports are enqueued as
:class:`ChargeOutcomeJob` messages; the dunning engine applies them
asynchronously.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from billing_engine.api.dependencies import JobQueueDep, SettingsDep
from billing_engine.jobs.messages import ChargeOutcomeJob
from billing_engine.models.charge import ChargeOutcomeReport

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Billing-Signature"

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def compute_signature(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` signature for *body*."""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: str, secret: str) -> bool:
    """Constant-time comparison of *signature_header* against the expected signature."""
    if not signature_header.startswith("sha256="):
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature_header)


@router.post("/billing-attempts", status_code=202)
async def billing_attempt_outcome(
    request: Request,
    settings: SettingsDep,
    queue: JobQueueDep,
) -> dict[str, Any]:
    """Accept one billing attempt outcome report."""
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        raise HTTPException(status_code=400, detail=f"Missing {SIGNATURE_HEADER} header")

    body = await request.body()
    if not verify_signature(body, signature, settings.webhook_secret.get_secret_value()):
        logger.warning("Rejected outcome webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        report = ChargeOutcomeReport.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Rejected malformed outcome report: %s", exc.error_count())
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc

    job = ChargeOutcomeJob(report=report)
    accepted = await queue.enqueue(job)
    logger.info(
        "Outcome report %s (%s) for tenant=%s contract=%s cycle=%d %s",
        report.billing_attempt_id,
        report.outcome.value,
        report.tenant_id,
        report.contract_id,
        report.billing_cycle_index,
        "enqueued" if accepted else "dropped as duplicate",
        extra={"tenant_id": report.tenant_id, "job_id": job.job_id},
    )
    return {"status": "accepted" if accepted else "duplicate", "job_id": job.job_id}

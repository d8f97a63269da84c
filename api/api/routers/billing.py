"""Payment provider webhook endpoint.

Authenticated by the ``Stripe-Signature`` header, not a bearer token.
Status codes tell the provider whether to redeliver:

- 200: processed, ignored, duplicate or permanently rejected.  Rejected
  events are recorded and never retried.
- 400: the signature or the envelope is invalid.  Nothing was stored.
- 503: a transient failure (store unavailable, event ahead of the
  subscription it refers to).  Nothing was recorded; redelivery is safe.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from ledger_engine.errors import MalformedEventError, SignatureInvalidError, StoreUnavailableError
from ledger_engine.webhooks.reconciler import EventOutOfOrderError

from api.dependencies import ReconcilerDep
from api.middleware.prometheus import record_webhook
from api.schemas import WebhookAckResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks")
async def stripe_webhook(request: Request, reconciler: ReconcilerDep) -> WebhookAckResponse:
    """Verify, deduplicate and reconcile one provider event."""
    body = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await reconciler.handle(body, sig_header)
    except SignatureInvalidError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        record_webhook("unknown", "signature_invalid")
        raise HTTPException(status_code=400, detail="Signature verification failed")
    except MalformedEventError as exc:
        logger.warning("Malformed webhook envelope: %s", exc)
        record_webhook("unknown", "malformed")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except (StoreUnavailableError, EventOutOfOrderError) as exc:
        logger.warning("Webhook processing deferred: %s", exc)
        record_webhook("unknown", "retry")
        raise HTTPException(status_code=503, detail="Temporarily unable to process event; retry later")

    record_webhook(result.event_type, result.status.value)
    return WebhookAckResponse.from_result(result)

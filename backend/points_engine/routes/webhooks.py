"""
Points Engine — Payment Webhook Routes
=======================================

What:  Receives payment-completion webhooks and serves the points package
       catalogue.
Why:   Purchased points enter the ledger only through this endpoint.
How:   Reads the RAW body (signature verification needs the exact bytes) and
       hands it to PaymentIntakeService.

Response Contract (POST /api/webhooks/payments):
    200 {"received": true}  processed, duplicate, or ignored event type
    400                     signature failure or malformed body/metadata
    404                     metadata names an unknown user
    500                     transient failure; the processor will retry
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request

from points_engine.dependencies import get_container
from points_engine.schemas.common import ErrorResponse
from points_engine.schemas.payment import POINTS_PACKAGES, PointsPackage, WebhookAck
from points_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Payments"])


@router.post(
    "/webhooks/payments",
    response_model=WebhookAck,
    responses={
        400: {"description": "Bad signature or malformed event", "model": ErrorResponse},
        404: {"description": "Unknown user in metadata", "model": ErrorResponse},
        500: {"description": "Processing failed; retry", "model": ErrorResponse},
    },
    summary="Payment processor webhook",
)
async def payment_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> WebhookAck:
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")

    outcome = await container.payments.handle_payment_completed(raw_body, signature)
    logger.info("Webhook %s: %s", outcome.event_id, outcome.status)
    return WebhookAck(received=True)


@router.get(
    "/payments/packages",
    response_model=List[PointsPackage],
    summary="Points packages available for purchase",
)
async def list_packages() -> List[PointsPackage]:
    return POINTS_PACKAGES

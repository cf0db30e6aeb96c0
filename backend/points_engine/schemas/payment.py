"""
Points Engine — Payment Event Schemas
======================================

What:  Typed views of the payment processor's webhook payload, plus the
       read-only points package catalogue.
Why:   The webhook body is untrusted input that moves money. Every field the
       intake relies on is parsed and validated here; nothing downstream reads
       raw dicts.

Payload shape (only the fields we use):
    {
      "id": "evt_...",
      "type": "checkout.session.completed",
      "data": {"object": {"id": "cs_...",
                          "metadata": {"userId": "...", "points": "1000"}}}
    }
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHECKOUT_COMPLETED = "checkout.session.completed"


class CheckoutObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return {} if v is None else v


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: CheckoutObject = Field(default_factory=CheckoutObject)


class StripeEventEnvelope(BaseModel):
    """Outer event envelope. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1)
    data: EventData = Field(default_factory=EventData)


class PaymentCompleted(BaseModel):
    """
    What:  The credit instruction carried in checkout-session metadata.

    `points` arrives as a decimal string ("1000"). Only plain non-negative
    integers are accepted and the value must be positive; "12.5", "1e3",
    booleans and the like are rejected rather than coerced.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1, max_length=64)
    points: int = Field(gt=0, le=1_000_000)

    @field_validator("user_id", mode="before")
    @classmethod
    def strip_user_id(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("points", mode="before")
    @classmethod
    def parse_points(cls, v):
        if isinstance(v, bool):
            raise ValueError("points must be an integer")
        if isinstance(v, int):
            return v
        if isinstance(v, str) and v.strip().isdecimal():
            return int(v.strip())
        raise ValueError("points must be an integer")


class WebhookAck(BaseModel):
    received: bool = True


class PointsPackage(BaseModel):
    id: str
    points: int
    price_cents: int = Field(description="Price in USD cents")
    label: str
    popular: bool = False
    bonus: Optional[str] = None


POINTS_PACKAGES: List[PointsPackage] = [
    PointsPackage(id="points_500", points=500, price_cents=250, label="500 Points"),
    PointsPackage(id="points_1000", points=1000, price_cents=500, label="1,000 Points", popular=True),
    PointsPackage(id="points_2500", points=2500, price_cents=1000, label="2,500 Points", bonus="25% bonus"),
    PointsPackage(id="points_5000", points=5000, price_cents=1750, label="5,000 Points", bonus="43% bonus"),
]

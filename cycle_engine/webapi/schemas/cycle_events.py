from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cycle_engine.services.cycle_scenario import Order, OrderSnapshot, OrderType


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class OrderPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int | str
    subscriber_id: int = Field(..., alias='subscriberId')
    plan_id: int | None = Field(default=None, alias='planId')
    type: str = 'new_purchase'
    period: str | None = 'monthly'

    def to_order(self) -> Order:
        return Order(
            id=self.id,
            subscriber_id=self.subscriber_id,
            plan_id=self.plan_id,
            type=OrderType.parse(self.type),
            period=self.period,
        )


class SubscriberStateBefore(BaseModel):
    """Subscriber state the sender captured before applying the order."""

    model_config = ConfigDict(populate_by_name=True)

    plan_id: int | None = Field(default=None, alias='planId')
    expired_at: datetime | None = Field(default=None, alias='expiredAt')
    next_reset_at: datetime | None = Field(default=None, alias='nextResetAt')
    had_plan: bool | None = Field(default=None, alias='hadPlan')
    was_expired: bool | None = Field(default=None, alias='wasExpired')

    @field_validator('expired_at', 'next_reset_at')
    @classmethod
    def normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return _to_naive_utc(value)

    def to_snapshot(self, order_id: int | str, now: datetime) -> OrderSnapshot:
        had_plan = self.had_plan if self.had_plan is not None else self.plan_id is not None
        if self.was_expired is not None:
            was_expired = self.was_expired
        else:
            was_expired = self.expired_at is not None and self.expired_at <= now
        return OrderSnapshot(
            order_id=order_id,
            plan_id=self.plan_id,
            expired_at=self.expired_at,
            next_reset_at=self.next_reset_at,
            had_plan=had_plan,
            was_expired=was_expired,
        )


class OrderOpenedEvent(BaseModel):
    order: OrderPayload
    before: SubscriberStateBefore | None = None


class TrafficResetEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscriber_id: int | None = Field(default=None, alias='subscriberId')
    remnawave_uuid: str | None = Field(default=None, alias='remnawaveUuid')

    @model_validator(mode='after')
    def require_identity(self) -> TrafficResetEvent:
        if self.subscriber_id is None and not self.remnawave_uuid:
            raise ValueError('subscriber_id or remnawave_uuid is required')
        return self

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


class Plan(Base):
    """Subscription plan. Read-only for the engine apart from change detection."""

    __tablename__ = 'plans'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    # Free-text labels, e.g. ["interval_days:7", "expired_days:30"]; legacy rows may hold a comma string
    tags = Column(JSON, nullable=True, default=list)

    # never, monthly_anniversary, first_day_of_month, yearly_anniversary, first_day_of_year (None = system default)
    reset_method = Column(String(32), nullable=True, default=None)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), index=True)

    subscribers = relationship('Subscriber', back_populates='plan')

    def __repr__(self):
        return f"<Plan(id={self.id}, name='{self.name}', reset_method={self.reset_method})>"


class Subscriber(Base):
    __tablename__ = 'subscribers'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=True)
    remnawave_uuid = Column(String(255), nullable=True, unique=True)

    plan_id = Column(Integer, ForeignKey('plans.id', ondelete='SET NULL'), nullable=True, index=True)

    expired_at = Column(DateTime, nullable=True)  # None = never expires
    next_reset_at = Column(DateTime, nullable=True)  # None = no scheduled auto-reset
    last_reset_at = Column(DateTime, nullable=True)

    used_upload = Column(BigInteger, default=0, nullable=False)
    used_download = Column(BigInteger, default=0, nullable=False)
    traffic_quota = Column(BigInteger, default=0, nullable=False)  # bytes, 0 = unmetered

    suspended = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    plan = relationship('Plan', back_populates='subscribers', lazy='selectin')

    __table_args__ = (Index('ix_subscribers_suspended_expired_at', 'suspended', 'expired_at'),)

    @property
    def used_traffic(self) -> int:
        return (self.used_upload or 0) + (self.used_download or 0)

    @property
    def is_metered(self) -> bool:
        return bool(self.traffic_quota and self.traffic_quota > 0)

    def is_expired_at(self, now: datetime) -> bool:
        return self.expired_at is not None and self.expired_at <= now

    def remaining_seconds(self, now: datetime) -> float | None:
        if self.expired_at is None:
            return None
        return (self.expired_at - now).total_seconds()

    def __repr__(self):
        return (
            f'<Subscriber(id={self.id}, plan_id={self.plan_id}, expired_at={self.expired_at}, '
            f'next_reset_at={self.next_reset_at})>'
        )


class TrafficResetLog(Base):
    """Audit row written by the traffic-reset primitive."""

    __tablename__ = 'traffic_reset_logs'

    id = Column(Integer, primary_key=True, index=True)
    subscriber_id = Column(Integer, ForeignKey('subscribers.id', ondelete='CASCADE'), nullable=False, index=True)
    source = Column(String(32), nullable=False)
    used_upload_before = Column(BigInteger, default=0, nullable=False)
    used_download_before = Column(BigInteger, default=0, nullable=False)
    reset_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=func.now())


class EngineState(Base):
    """Key/value rows for persisted engine checkpoints."""

    __tablename__ = 'cycle_engine_state'

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

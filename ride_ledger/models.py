import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
    Float,
    Index,
    UniqueConstraint,
    CheckConstraint,
    JSON,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid() -> uuid.UUID:
    return uuid.uuid4()


# Ride statuses
RIDE_REQUESTED = "requested"
RIDE_ASSIGNED = "assigned"
RIDE_IN_PROGRESS = "in_progress"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED = "cancelled"
RIDE_STATUSES = (RIDE_REQUESTED, RIDE_ASSIGNED, RIDE_IN_PROGRESS, RIDE_COMPLETED, RIDE_CANCELLED)
ACTIVE_DRIVER_STATUSES = (RIDE_ASSIGNED, RIDE_IN_PROGRESS)

# Ledger
TX_TYPES = ("payment", "refund", "payout", "wallet_topup", "debit", "credit")
TX_STATUSES = ("completed", "pending", "failed")
PAYMENT_METHODS = ("card", "wallet", "upi", "cash")

# Payouts
PAYOUT_STATUSES = ("pending", "approved", "processed", "failed")
PAYOUT_METHOD_TYPES = ("bank", "upi", "paypal")


class User(Base):
    """Directory record for passengers, drivers and admins.

    Owned by the surrounding platform; the ride core only reads role and
    suspension state and maintains ``current_ride_id`` as the driver booking lease.
    """

    __tablename__ = "users"
    __table_args__ = (Index("ix_users_role_suspended", "role", "is_suspended"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True, unique=True)
    phone = Column(String(32), nullable=True, index=True)
    role = Column(String(16), nullable=False, default="passenger")  # passenger|driver|admin
    roles = Column(JSON, nullable=True)  # RBAC slugs, e.g. ["driver", "support"]
    is_online = Column(Boolean, nullable=False, default=False)
    is_suspended = Column(Boolean, nullable=False, default=False)
    current_ride_id = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    wallet = relationship("Wallet", uselist=False, back_populates="user")


class FarePolicy(Base):
    __tablename__ = "fare_policies"
    __table_args__ = (Index("ix_fare_policies_active_effective", "is_active", "effective_from"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(64), nullable=False)
    base_cents = Column(Integer, nullable=False, default=0)
    per_km_cents = Column(Integer, nullable=False, default=0)
    per_min_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_created", "created_at"),
        Index("ix_rides_driver_status", "driver_id", "status"),
        Index("ix_rides_passenger", "passenger_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    passenger_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    status = Column(String(24), nullable=False, default=RIDE_REQUESTED)
    pickup = Column(JSON, nullable=False)  # Location {address, lat, lng}
    drop = Column(JSON, nullable=False)
    fare_cents = Column(Integer, nullable=True)
    distance_km = Column(Float, nullable=True)
    duration_min = Column(Float, nullable=True)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    discount_cents = Column(Integer, nullable=False, default=0)
    rating = Column(Integer, nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    passenger = relationship("User", foreign_keys=[passenger_id])
    driver = relationship("User", foreign_keys=[driver_id])
    fare_snapshot = relationship("FareSnapshot", uselist=False, back_populates="ride")


class FareSnapshot(Base):
    __tablename__ = "fare_snapshots"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    ride_id = Column(Uuid(as_uuid=True), ForeignKey("rides.id"), nullable=False, unique=True)
    policy_id = Column(Uuid(as_uuid=True), ForeignKey("fare_policies.id"), nullable=True)
    source = Column(String(16), nullable=False, default="policy")  # policy|fixed
    base_charge_cents = Column(Integer, nullable=False, default=0)
    distance_charge_cents = Column(Integer, nullable=False, default=0)
    time_charge_cents = Column(Integer, nullable=False, default=0)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    discount_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False)
    final_amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    ride = relationship("Ride", back_populates="fare_snapshot")
    policy = relationship("FarePolicy")


class Wallet(Base):
    __tablename__ = "wallets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    currency_code = Column(String(8), nullable=False, default="INR")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="wallet")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_transactions_idempotency"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_non_negative"),
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_ride", "ride_id"),
        Index("ix_transactions_payout", "payout_id"),
        Index("ix_transactions_pair", "pair_id"),
        Index("ix_transactions_status_created", "status", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    ride_id = Column(Uuid(as_uuid=True), ForeignKey("rides.id"), nullable=True)
    payout_id = Column(Uuid(as_uuid=True), ForeignKey("driver_payouts.id"), nullable=True)
    pair_id = Column(Uuid(as_uuid=True), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    type = Column(String(16), nullable=False)  # payment|refund|payout|wallet_topup|debit|credit
    status = Column(String(16), nullable=False, default="pending")  # completed|pending|failed
    payment_method = Column(String(16), nullable=True)  # card|wallet|upi|cash
    reference = Column(String(64), nullable=True)
    description = Column(String(255), nullable=True)
    meta = Column(JSON, nullable=True)
    idempotency_key = Column(String(96), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class PayoutMethod(Base):
    __tablename__ = "payout_methods"
    __table_args__ = (Index("ix_payout_methods_driver", "driver_id"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(String(16), nullable=False)  # bank|upi|paypal
    label = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)  # PayoutDestination
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class DriverPayout(Base):
    __tablename__ = "driver_payouts"
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_driver_payouts_amount_non_negative"),
        Index("ix_driver_payouts_driver_created", "driver_id", "created_at"),
        Index("ix_driver_payouts_status", "status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    period = Column(String(32), nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending|approved|processed|failed
    kind = Column(String(16), nullable=False, default="request")  # request|manual
    method_id = Column(Uuid(as_uuid=True), ForeignKey("payout_methods.id"), nullable=True)
    destination = Column(JSON, nullable=True)  # PayoutDestination copied at request time
    notes = Column(String(1024), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    driver = relationship("User")


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_created", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    type = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

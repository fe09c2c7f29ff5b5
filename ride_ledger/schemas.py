from datetime import datetime
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, model_validator


T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


def ok(data=None, message: Optional[str] = None) -> dict:
    return {"success": True, "data": data, "message": message}


def _sid(value) -> Optional[str]:
    return str(value) if value is not None else None


class Location(BaseModel):
    address: Optional[str] = Field(default=None, max_length=512)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def _address_or_coords(self):
        if not self.address and (self.lat is None or self.lng is None):
            raise ValueError("location needs an address or both lat and lng")
        return self


class PayoutDestination(BaseModel):
    account_number: Optional[str] = Field(default=None, max_length=34)
    ifsc_code: Optional[str] = Field(default=None, max_length=16)
    account_holder: Optional[str] = Field(default=None, max_length=128)
    upi_id: Optional[str] = Field(default=None, max_length=64)
    paypal_email: Optional[str] = Field(default=None, max_length=255)


class TransactionMeta(BaseModel):
    method_id: Optional[str] = None
    reason: Optional[str] = None
    source: Optional[str] = None  # ride_completion|ride_cancellation|manual|payout_request|manual_payout


# Rides
class RideCreateIn(BaseModel):
    pickup: Location
    drop: Location
    fare_cents: Optional[int] = Field(default=None, ge=0)
    distance_km: Optional[float] = Field(default=None, ge=0)
    duration_min: Optional[float] = Field(default=None, ge=0)
    surge_multiplier: Optional[float] = Field(default=None, ge=1, le=10)
    discount_cents: Optional[int] = Field(default=None, ge=0)


class AssignIn(BaseModel):
    driver_id: str


class StatusIn(BaseModel):
    status: str


class CancelIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class RideRatingIn(BaseModel):
    rating: int = Field(ge=1, le=5)


class FareSnapshotOut(BaseModel):
    policy_id: Optional[str] = None
    source: str
    base_charge_cents: int
    distance_charge_cents: int
    time_charge_cents: int
    surge_multiplier: float
    discount_cents: int
    subtotal_cents: int
    final_amount_cents: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, snap) -> "FareSnapshotOut":
        return cls(
            policy_id=_sid(snap.policy_id),
            source=snap.source,
            base_charge_cents=snap.base_charge_cents,
            distance_charge_cents=snap.distance_charge_cents,
            time_charge_cents=snap.time_charge_cents,
            surge_multiplier=snap.surge_multiplier,
            discount_cents=snap.discount_cents,
            subtotal_cents=snap.subtotal_cents,
            final_amount_cents=snap.final_amount_cents,
            created_at=snap.created_at,
        )


class RideOut(BaseModel):
    id: str
    status: str
    passenger_id: str
    driver_id: Optional[str] = None
    pickup: Optional[dict] = None
    drop: Optional[dict] = None
    fare_cents: Optional[int] = None
    distance_km: Optional[float] = None
    duration_min: Optional[float] = None
    surge_multiplier: Optional[float] = None
    discount_cents: Optional[int] = None
    rating: Optional[int] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, ride) -> "RideOut":
        return cls(
            id=str(ride.id),
            status=ride.status,
            passenger_id=str(ride.passenger_id),
            driver_id=_sid(ride.driver_id),
            pickup=ride.pickup,
            drop=ride.drop,
            fare_cents=ride.fare_cents,
            distance_km=ride.distance_km,
            duration_min=ride.duration_min,
            surge_multiplier=ride.surge_multiplier,
            discount_cents=ride.discount_cents,
            rating=ride.rating,
            cancel_reason=ride.cancel_reason,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
            assigned_at=ride.assigned_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
            cancelled_at=ride.cancelled_at,
        )


class AutoAssignOut(BaseModel):
    ride: RideOut
    driver_id: str
    driver_name: Optional[str] = None


# Ledger
class TransactionIn(BaseModel):
    user_id: str
    amount_cents: int = Field(gt=0)
    type: Literal["payment", "refund", "wallet_topup", "debit", "credit"]
    ride_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=255)
    payment_method: Optional[Literal["card", "wallet", "upi", "cash"]] = None
    reference: Optional[str] = Field(default=None, max_length=64)
    idempotency_key: Optional[str] = None


class TransactionOut(BaseModel):
    id: str
    user_id: str
    ride_id: Optional[str] = None
    payout_id: Optional[str] = None
    pair_id: Optional[str] = None
    amount_cents: int
    type: str
    status: str
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    meta: Optional[TransactionMeta] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, tx) -> "TransactionOut":
        return cls(
            id=str(tx.id),
            user_id=str(tx.user_id),
            ride_id=_sid(tx.ride_id),
            payout_id=_sid(tx.payout_id),
            pair_id=_sid(tx.pair_id),
            amount_cents=tx.amount_cents,
            type=tx.type,
            status=tx.status,
            payment_method=tx.payment_method,
            reference=tx.reference,
            description=tx.description,
            meta=tx.meta,
            created_at=tx.created_at,
            updated_at=tx.updated_at,
        )


class WalletOut(BaseModel):
    user_id: str
    balance_cents: int = 0
    currency: Optional[str] = None
    updated_at: Optional[datetime] = None


class ManualEntryOut(BaseModel):
    tx: TransactionOut
    wallet: WalletOut


class CompletionOut(BaseModel):
    ride: RideOut
    fare: FareSnapshotOut
    tx_passenger: TransactionOut
    tx_driver: TransactionOut
    platform_share_cents: int


class CancellationOut(BaseModel):
    ride: RideOut
    refunds: List[TransactionOut] = []


class ReceiptOut(BaseModel):
    ride_id: str
    status: str
    passenger_id: str
    driver_id: Optional[str] = None
    fare_cents: int
    fare: Optional[FareSnapshotOut] = None
    platform_commission_cents: int
    net_driver_payout_cents: int
    payment: Optional[TransactionOut] = None
    payout: Optional[TransactionOut] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# Fares
class FarePolicyIn(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    base_cents: int = Field(default=0, ge=0)
    per_km_cents: int = Field(default=0, ge=0)
    per_min_cents: int = Field(default=0, ge=0)
    is_active: Optional[bool] = None
    effective_from: Optional[datetime] = None


class FarePolicyUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    base_cents: Optional[int] = Field(default=None, ge=0)
    per_km_cents: Optional[int] = Field(default=None, ge=0)
    per_min_cents: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    effective_from: Optional[datetime] = None


class FarePolicyOut(BaseModel):
    id: str
    name: str
    base_cents: int
    per_km_cents: int
    per_min_cents: int
    is_active: bool
    effective_from: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, p) -> "FarePolicyOut":
        return cls(
            id=str(p.id),
            name=p.name,
            base_cents=p.base_cents,
            per_km_cents=p.per_km_cents,
            per_min_cents=p.per_min_cents,
            is_active=bool(p.is_active),
            effective_from=p.effective_from,
            created_at=p.created_at,
        )


class FareCalcIn(BaseModel):
    distance_km: float = Field(default=0, ge=0)
    duration_min: float = Field(default=0, ge=0)
    surge_multiplier: float = Field(default=1, ge=1, le=10)
    discount_cents: int = Field(default=0, ge=0)


class FareCalcOut(BaseModel):
    policy_id: str
    policy_name: str
    base_charge_cents: int
    distance_charge_cents: int
    time_charge_cents: int
    subtotal_cents: int
    surge_multiplier: float
    discount_cents: int
    estimate_cents: int


# Payouts
class PayoutMethodIn(BaseModel):
    type: Literal["bank", "upi", "paypal"]
    label: Optional[str] = Field(default=None, max_length=64)
    details: Optional[PayoutDestination] = None


class PayoutMethodUpdateIn(BaseModel):
    label: Optional[str] = Field(default=None, max_length=64)
    details: Optional[PayoutDestination] = None


class PayoutMethodOut(BaseModel):
    id: str
    driver_id: str
    type: str
    label: Optional[str] = None
    details: Optional[PayoutDestination] = None
    verified: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, m) -> "PayoutMethodOut":
        return cls(
            id=str(m.id),
            driver_id=str(m.driver_id),
            type=m.type,
            label=m.label,
            details=PayoutDestination(**m.details) if m.details else None,
            verified=bool(m.verified),
            created_at=m.created_at,
        )


class PayoutRequestIn(BaseModel):
    method_id: str
    amount_cents: Optional[int] = Field(default=None, gt=0)
    period: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=512)


class PayoutProcessIn(BaseModel):
    action: str
    failure_reason: Optional[str] = Field(default=None, max_length=255)


class ManualPayoutIn(BaseModel):
    amount_cents: int = Field(gt=0)
    period: Optional[str] = Field(default=None, max_length=32)
    notes: Optional[str] = Field(default=None, max_length=512)


class DriverPayoutOut(BaseModel):
    id: str
    driver_id: str
    amount_cents: int
    period: Optional[str] = None
    status: str
    kind: str
    method_id: Optional[str] = None
    destination: Optional[PayoutDestination] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, p) -> "DriverPayoutOut":
        return cls(
            id=str(p.id),
            driver_id=str(p.driver_id),
            amount_cents=p.amount_cents,
            period=p.period,
            status=p.status,
            kind=p.kind,
            method_id=_sid(p.method_id),
            destination=PayoutDestination(**p.destination) if p.destination else None,
            notes=p.notes,
            processed_at=p.processed_at,
            created_at=p.created_at,
            updated_at=p.updated_at,
        )


# Admin
class DriverOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str
    is_online: bool
    is_suspended: bool
    current_ride_id: Optional[str] = None

    @classmethod
    def from_model(cls, u) -> "DriverOut":
        return cls(
            id=str(u.id),
            name=u.name,
            email=u.email,
            role=u.role,
            is_online=bool(u.is_online),
            is_suspended=bool(u.is_suspended),
            current_ride_id=_sid(u.current_ride_id),
        )


class SuspendIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class SweepOut(BaseModel):
    finalized_pairs: int
    failed_pairs: int
    failed_entries: int


class WalletMismatchOut(BaseModel):
    user_id: str
    balance_cents: int
    ledger_sum_cents: int


class ReconcileOut(BaseModel):
    ok: bool
    mismatches: List[WalletMismatchOut]

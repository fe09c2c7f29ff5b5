from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import rides as ride_service
from ..auth import ActorContext, get_current_actor
from ..config import settings
from ..database import get_db
from ..schemas import (
    AssignIn,
    AutoAssignOut,
    CancelIn,
    CancellationOut,
    CompletionOut,
    Envelope,
    FareSnapshotOut,
    ReceiptOut,
    RideCreateIn,
    RideOut,
    RideRatingIn,
    StatusIn,
    TransactionOut,
    ok,
)
from ..utils.ids import as_uuid


router = APIRouter(prefix="/rides", tags=["rides"])


@router.post("", response_model=Envelope[RideOut])
def create_ride(payload: RideCreateIn, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.create_ride(
        db,
        actor,
        pickup=payload.pickup.model_dump(),
        drop=payload.drop.model_dump(),
        fare_cents=payload.fare_cents,
        distance_km=payload.distance_km,
        duration_min=payload.duration_min,
        surge_multiplier=payload.surge_multiplier,
        discount_cents=payload.discount_cents,
    )
    return ok(RideOut.from_model(ride), "Ride requested")


@router.get("", response_model=Envelope[List[RideOut]])
def list_rides(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    actor: ActorContext = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    rides = ride_service.list_rides(db, actor, status=status, limit=limit, offset=offset)
    return ok([RideOut.from_model(r) for r in rides])


@router.get("/active", response_model=Envelope[List[RideOut]])
def active_rides(actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ok([RideOut.from_model(r) for r in ride_service.active_rides(db, actor)])


@router.get("/recent", response_model=Envelope[List[RideOut]])
def recent_rides(
    limit: int = Query(10, ge=1),
    actor: ActorContext = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    limit = min(limit, settings.RECENT_RIDES_MAX)
    return ok([RideOut.from_model(r) for r in ride_service.recent_rides(db, actor, limit=limit)])


@router.get("/{ride_id}", response_model=Envelope[RideOut])
def get_ride(ride_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.get_ride_for(db, as_uuid(ride_id, "ride_id"), actor)
    return ok(RideOut.from_model(ride))


@router.post("/{ride_id}/assign", response_model=Envelope[RideOut])
def assign_ride(ride_id: str, payload: AssignIn, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.assign(db, as_uuid(ride_id, "ride_id"), as_uuid(payload.driver_id, "driver_id"), actor)
    return ok(RideOut.from_model(ride), "Driver assigned")


@router.post("/{ride_id}/autoassign", response_model=Envelope[AutoAssignOut])
def auto_assign_ride(ride_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride, driver = ride_service.auto_assign(db, as_uuid(ride_id, "ride_id"), actor)
    return ok(AutoAssignOut(ride=RideOut.from_model(ride), driver_id=str(driver.id), driver_name=driver.name), "Driver assigned")


@router.post("/{ride_id}/start", response_model=Envelope[RideOut])
def start_ride(ride_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.start(db, as_uuid(ride_id, "ride_id"), actor)
    return ok(RideOut.from_model(ride), "Ride started")


@router.post("/{ride_id}/status", response_model=Envelope[RideOut])
def update_ride_status(ride_id: str, payload: StatusIn, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.update_status(db, as_uuid(ride_id, "ride_id"), payload.status, actor)
    return ok(RideOut.from_model(ride), f"Ride {ride.status}")


@router.post("/{ride_id}/complete", response_model=Envelope[CompletionOut])
def complete_ride(ride_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    res = ride_service.complete(db, as_uuid(ride_id, "ride_id"), actor)
    return ok(
        CompletionOut(
            ride=RideOut.from_model(res.ride),
            fare=FareSnapshotOut.from_model(res.snapshot),
            tx_passenger=TransactionOut.from_model(res.debit),
            tx_driver=TransactionOut.from_model(res.credit),
            platform_share_cents=res.platform_share_cents,
        ),
        "Ride completed",
    )


@router.post("/{ride_id}/cancel", response_model=Envelope[CancellationOut])
def cancel_ride(
    ride_id: str,
    payload: Optional[CancelIn] = None,
    actor: ActorContext = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    res = ride_service.cancel(db, as_uuid(ride_id, "ride_id"), actor, reason=payload.reason if payload else None)
    return ok(
        CancellationOut(
            ride=RideOut.from_model(res.ride),
            refunds=[TransactionOut.from_model(t) for t in res.refunds],
        ),
        "Ride cancelled",
    )


@router.post("/{ride_id}/rate", response_model=Envelope[RideOut])
def rate_ride(ride_id: str, payload: RideRatingIn, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    ride = ride_service.rate(db, as_uuid(ride_id, "ride_id"), actor, payload.rating)
    return ok(RideOut.from_model(ride), "Thanks for rating")


@router.get("/{ride_id}/receipt", response_model=Envelope[ReceiptOut])
def ride_receipt(ride_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    rc = ride_service.receipt(db, as_uuid(ride_id, "ride_id"), actor)
    ride = rc.ride
    return ok(
        ReceiptOut(
            ride_id=str(ride.id),
            status=ride.status,
            passenger_id=str(ride.passenger_id),
            driver_id=str(ride.driver_id) if ride.driver_id else None,
            fare_cents=rc.fare_cents,
            fare=FareSnapshotOut.from_model(rc.snapshot) if rc.snapshot is not None else None,
            platform_commission_cents=rc.platform_commission_cents,
            net_driver_payout_cents=rc.net_driver_payout_cents,
            payment=TransactionOut.from_model(rc.payment) if rc.payment is not None else None,
            payout=TransactionOut.from_model(rc.payout) if rc.payout is not None else None,
            created_at=ride.created_at,
            completed_at=ride.completed_at,
        )
    )

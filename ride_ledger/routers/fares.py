from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import fares as fare_service
from ..auth import ActorContext, get_current_actor, require_admin
from ..database import get_db
from ..schemas import Envelope, FareCalcIn, FareCalcOut, FarePolicyIn, FarePolicyOut, FarePolicyUpdateIn, ok
from ..utils.audit import record_event
from ..utils.ids import as_uuid


router = APIRouter(prefix="/fares", tags=["fares"])


@router.get("", response_model=Envelope[List[FarePolicyOut]])
def list_policies(actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ok([FarePolicyOut.from_model(p) for p in fare_service.list_policies(db)])


@router.get("/current", response_model=Envelope[FarePolicyOut])
def current_policy(actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ok(FarePolicyOut.from_model(fare_service.resolve_policy(db)))


@router.post("/calc", response_model=Envelope[FareCalcOut])
def calculate_fare(payload: FareCalcIn, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    policy = fare_service.resolve_policy(db)
    quote = fare_service.price(
        policy,
        payload.distance_km,
        payload.duration_min,
        surge=payload.surge_multiplier,
        discount_cents=payload.discount_cents,
    )
    return ok(
        FareCalcOut(
            policy_id=str(policy.id),
            policy_name=policy.name,
            base_charge_cents=quote.base_charge_cents,
            distance_charge_cents=quote.distance_charge_cents,
            time_charge_cents=quote.time_charge_cents,
            subtotal_cents=quote.subtotal_cents,
            surge_multiplier=quote.surge_multiplier,
            discount_cents=quote.discount_cents,
            estimate_cents=quote.total_cents,
        )
    )


@router.post("", response_model=Envelope[FarePolicyOut])
def create_policy(payload: FarePolicyIn, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    policy = fare_service.create_policy(db, **payload.model_dump())
    record_event(db, "fare_policy.created", actor.user_id, {"policy_id": str(policy.id)})
    return ok(FarePolicyOut.from_model(policy), "Fare policy created")


@router.put("/{policy_id}", response_model=Envelope[FarePolicyOut])
def update_policy(policy_id: str, payload: FarePolicyUpdateIn, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    policy = fare_service.update_policy(db, as_uuid(policy_id, "policy_id"), **payload.model_dump(exclude_unset=True))
    record_event(db, "fare_policy.updated", actor.user_id, {"policy_id": str(policy.id)})
    return ok(FarePolicyOut.from_model(policy), "Fare policy updated")


@router.delete("/{policy_id}", response_model=Envelope[dict])
def delete_policy(policy_id: str, actor: ActorContext = Depends(require_admin), db: Session = Depends(get_db)):
    fare_service.delete_policy(db, as_uuid(policy_id, "policy_id"))
    record_event(db, "fare_policy.deleted", actor.user_id, {"policy_id": policy_id})
    return ok(None, "Fare policy deleted")

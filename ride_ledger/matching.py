import logging
from typing import Iterable, Optional

from prometheus_client import Counter
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .models import ACTIVE_DRIVER_STATUSES, Ride, User
from .utils.metrics import inc


logger = logging.getLogger("ride_ledger.matching")

MATCH_ATTEMPTS = Counter("rides_matching_attempts_total", "Driver matching attempts", ["result"])


def _busy_driver_ids():
    return select(Ride.driver_id).where(Ride.status.in_(ACTIVE_DRIVER_STATUSES), Ride.driver_id.is_not(None))


def available_drivers(
    db: Session,
    limit: int = 10,
    exclude_busy: bool = True,
    exclude_ids: Optional[Iterable] = None,
) -> list[User]:
    """Eligible drivers, best candidate first.

    Order: longest idle (drivers who never drove first, then oldest last ride),
    online before offline, oldest account, id.
    """
    last_ride = (
        select(Ride.driver_id.label("driver_id"), func.max(Ride.updated_at).label("last_ride_at"))
        .where(Ride.driver_id.is_not(None))
        .group_by(Ride.driver_id)
        .subquery()
    )
    q = (
        select(User)
        .outerjoin(last_ride, last_ride.c.driver_id == User.id)
        .where(User.role == "driver", User.is_suspended.is_(False), User.current_ride_id.is_(None))
    )
    if exclude_busy:
        q = q.where(User.id.not_in(_busy_driver_ids()))
    exclude = [i for i in (exclude_ids or ()) if i is not None]
    if exclude:
        q = q.where(User.id.not_in(exclude))
    q = q.order_by(
        case((last_ride.c.last_ride_at.is_(None), 0), else_=1),
        last_ride.c.last_ride_at.asc(),
        case((User.is_online.is_(True), 0), else_=1),
        User.created_at.asc(),
        User.id.asc(),
    ).limit(max(1, limit))
    return db.execute(q).scalars().all()


def find_available_driver(db: Session, exclude_busy: bool = True, exclude_ids: Optional[Iterable] = None) -> User:
    found = available_drivers(db, limit=1, exclude_busy=exclude_busy, exclude_ids=exclude_ids)
    if not found:
        inc(MATCH_ATTEMPTS, "none")
        logger.info("no available drivers")
        raise NotFoundError("No available drivers", code="no_available_drivers")
    inc(MATCH_ATTEMPTS, "found")
    return found[0]

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import ActorContext, get_current_actor
from ..config import settings
from ..database import get_db
from ..errors import AuthorizationError
from ..ledger import get_wallet
from ..schemas import Envelope, WalletOut, ok
from ..utils.ids import as_uuid


router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("/{user_id}", response_model=Envelope[WalletOut])
def read_wallet(user_id: str, actor: ActorContext = Depends(get_current_actor), db: Session = Depends(get_db)):
    uid = as_uuid(user_id, "user_id")
    if uid != actor.user_id and not actor.is_admin:
        raise AuthorizationError("Cannot read another user's wallet")
    w = get_wallet(db, uid)
    if w is None:
        # No postings yet
        return ok(WalletOut(user_id=str(uid), balance_cents=0, currency=settings.DEFAULT_CURRENCY))
    return ok(WalletOut(user_id=str(uid), balance_cents=int(w.balance_cents), currency=w.currency_code, updated_at=w.updated_at))

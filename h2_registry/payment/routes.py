from fastapi import APIRouter, Depends
from sqlmodel import Session

from h2_registry.core.database import db
from h2_registry.payment.models import PayoutRead

from . import services

# Router initialisation
router = APIRouter(tags=["Payments"])


@router.get("/{address}", response_model=list[PayoutRead])
def read_payouts(address: str, read_session: Session = Depends(db.get_read_session)):
    return services.get_payouts_by_address(address, read_session)

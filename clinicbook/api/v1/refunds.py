from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Callable, Optional

from ...core.database import get_db
from ...core.security import UserRole
from ...api.deps import get_current_user, require_role, get_authority, get_clock
from ...models.user import User
from ...schemas.common import success_response
from ...schemas.refund import RefundCancel, RefundCreate, RefundReview, RefundResponse
from ...services.payment_authority import PaymentAuthority
from ...services.payment_service import PaymentRefundCoordinator

router = APIRouter(prefix="/refunds", tags=["Refunds"])

def _dump(refund) -> dict:
    return RefundResponse.model_validate(refund).model_dump(mode="json")

@router.post("", status_code=status.HTTP_201_CREATED)
def request_refund(
    refund_data: RefundCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Request a refund of a paid appointment's consultation fee."""
    refund = PaymentRefundCoordinator(db, authority, now).request_refund(
        current_user, refund_data.appointment_id, refund_data.reason, refund_data.description
    )
    return success_response(_dump(refund), "Refund request submitted successfully")

@router.get("")
def list_refunds(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority)
):
    refunds = PaymentRefundCoordinator(db, authority).list_refunds(current_user, status_filter)
    return success_response([_dump(r) for r in refunds], f"{len(refunds)} refund request(s)")

@router.put("/{refund_id}/review")
def review_refund(
    refund_id: int,
    review_data: RefundReview,
    current_user: User = Depends(require_role([UserRole.STAFF, UserRole.ADMIN])),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    refund = PaymentRefundCoordinator(db, authority, now).review_refund(
        current_user, refund_id, review_data.action, review_data.comments
    )
    return success_response(_dump(refund), f"Refund {refund.status.value}")

@router.put("/{refund_id}/process")
def process_refund(
    refund_id: int,
    current_user: User = Depends(require_role([UserRole.ADMIN, UserRole.MANAGER])),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Pay out an approved refund."""
    refund = PaymentRefundCoordinator(db, authority, now).process_refund(current_user, refund_id)
    return success_response(_dump(refund), "Refund processed successfully")

@router.put("/{refund_id}/cancel")
def cancel_refund(
    refund_id: int,
    cancel_data: Optional[RefundCancel] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    authority: PaymentAuthority = Depends(get_authority),
    now: Callable[[], datetime] = Depends(get_clock)
):
    """Withdraw a pending or approved refund."""
    refund = PaymentRefundCoordinator(db, authority, now).cancel_refund(
        current_user, refund_id, cancel_data.reason if cancel_data else None
    )
    return success_response(_dump(refund), "Refund cancelled successfully")

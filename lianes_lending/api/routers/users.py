from fastapi import APIRouter, Depends, Query

from ...schemas.loan import Loan
from ...schemas.reservation import Reservation
from ...services.lending import LendingService
from ..deps import get_service

router = APIRouter()


@router.get("/{user_id}/loans", response_model=list[Loan])
def list_active_loans(user_id: str, service: LendingService = Depends(get_service)):
    return service.get_active_loans(user_id)


@router.get("/{user_id}/loans/history", response_model=list[Loan])
def list_loan_history(user_id: str, limit: int = Query(100, ge=1, le=500), service: LendingService = Depends(get_service)):
    return service.loans.get_loan_history(user_id, limit)


@router.get("/{user_id}/reservations", response_model=list[Reservation])
def list_reservations(user_id: str, active: bool = False, service: LendingService = Depends(get_service)):
    if active:
        return service.get_active_reservations(user_id)
    return service.reservations.get_user_reservations(user_id)

from fastapi import APIRouter, Depends

from ...schemas.loan import CheckoutRequest, Loan, RenewRequest
from ...services.lending import LendingService
from ..deps import get_service

router = APIRouter()


@router.post("/", response_model=Loan, status_code=201)
def create_loan(payload: CheckoutRequest, service: LendingService = Depends(get_service)):
    return service.checkout(payload.book_id, payload.user_id)


@router.get("/{loan_id}", response_model=Loan)
def get_loan(loan_id: str, service: LendingService = Depends(get_service)):
    return service.loans.get_loan(loan_id)


@router.post("/{loan_id}/return", response_model=Loan)
def return_loan(loan_id: str, service: LendingService = Depends(get_service)):
    return service.return_book(loan_id)


@router.post("/{loan_id}/renew", response_model=Loan)
def renew_loan(loan_id: str, payload: RenewRequest, service: LendingService = Depends(get_service)):
    return service.renew(loan_id, payload.days)

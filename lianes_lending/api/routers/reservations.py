from fastapi import APIRouter, Depends

from ...schemas.reservation import Reservation, ReservationCreate
from ...services.lending import LendingService
from ..deps import get_service

router = APIRouter()


@router.post("/", status_code=201)
def create_reservation(payload: ReservationCreate, service: LendingService = Depends(get_service)):
    reservation_id = service.reserve(payload.user_id, payload.book_id, payload.book_title, payload.book_author)
    return {"id": reservation_id}


@router.post("/sweep")
def sweep_reservations(service: LendingService = Depends(get_service)):
    return {"expired": service.expire_sweep()}


@router.get("/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: str, service: LendingService = Depends(get_service)):
    return service.reservations.get_reservation(reservation_id)


@router.post("/{reservation_id}/cancel", status_code=204)
def cancel_reservation(reservation_id: str, service: LendingService = Depends(get_service)):
    service.cancel_reservation(reservation_id)


@router.post("/{reservation_id}/ready", response_model=Reservation)
def mark_reservation_ready(reservation_id: str, service: LendingService = Depends(get_service)):
    return service.reservations.mark_ready(reservation_id)

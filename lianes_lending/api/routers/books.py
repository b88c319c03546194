from fastapi import APIRouter, Depends

from ...schemas.book import Book, BookCreate
from ...services.lending import LendingService
from ..deps import get_service

router = APIRouter()


@router.post("/", response_model=Book, status_code=201)
def create_book(payload: BookCreate, service: LendingService = Depends(get_service)):
    return service.catalog.add_book(payload)


@router.post("/reconcile")
def reconcile_books(service: LendingService = Depends(get_service)):
    return {"changed": service.availability.reconcile_all()}


@router.get("/{book_id}", response_model=Book)
def get_book(book_id: str, service: LendingService = Depends(get_service)):
    return service.catalog.get_book(book_id)


@router.post("/{book_id}/recompute", response_model=Book)
def recompute_book(book_id: str, service: LendingService = Depends(get_service)):
    return service.recompute_availability(book_id)

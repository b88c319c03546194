from fastapi import Request

from ..services.lending import LendingService


def get_service(request: Request) -> LendingService:
    return request.app.state.service

from pydantic import BaseModel, Field

from .base import Document


class BookCreate(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    id: str | None = None


class Book(Document):
    title: str
    author: str
    available: bool = True
    current_reservation_id: str | None = None

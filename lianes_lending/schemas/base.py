from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import MalformedDocument


class Document(BaseModel):
    """Entity stored as a flat camelCase document keyed by ``id``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str

    @classmethod
    def from_document(cls, doc_id: str, data: dict | None):
        if data is None:
            raise MalformedDocument(f"{cls.__name__} document {doc_id} is empty", doc_id)
        try:
            return cls.model_validate({**data, "id": doc_id})
        except PydanticValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise MalformedDocument(f"{cls.__name__} document {doc_id} is malformed ({fields})", doc_id) from exc

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})

from ..errors import NotFound, ValidationFailed
from ..schemas.book import Book, BookCreate
from ..store.base import DocumentStore, Transaction
from .documents import book_ref, new_id, require_ids


class BookCatalog:
    """Minimal catalog ingestion: books enter available and are never deleted here."""

    def __init__(self, store: DocumentStore):
        self._store = store

    def add_book(self, payload: BookCreate) -> Book:
        book = Book(id=payload.id or new_id(), title=payload.title, author=payload.author)
        require_ids(book_id=book.id)

        def _add(txn: Transaction) -> Book:
            if txn.get(book_ref(book.id)) is not None:
                raise ValidationFailed(f"Book {book.id} already exists", book.id)
            txn.set(book_ref(book.id), book.to_document())
            return book

        return self._store.run_transaction(_add)

    def get_book(self, book_id: str) -> Book:
        require_ids(book_id=book_id)
        data = self._store.get(book_ref(book_id))
        if data is None:
            raise NotFound(f"Book {book_id} not found", book_id)
        return Book.from_document(book_id, data)

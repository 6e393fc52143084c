from __future__ import annotations

import json

from bookwize.models import from_iso, to_iso


class Book:
    """A catalogued title and the number of its copies on the shelf."""

    def __init__(self, title: str, author: str, isbn: str, quantity: int = 1,
                 available_quantity: int | None = None, id: str | None = None,
                 publisher: str | None = None, categories: list | None = None,
                 page_count: int | None = None, published_date: str | None = None,
                 description: str | None = None, image_url: str | None = None,
                 retired: bool = False, added_at=None, last_modified=None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.quantity = int(quantity)
        self.available_quantity = self.quantity if available_quantity is None else int(available_quantity)
        self.publisher = publisher
        self.categories = categories or []
        self.page_count = page_count
        self.published_date = published_date
        self.description = description
        self.image_url = image_url
        self.retired = bool(retired)
        self.added_at = from_iso(added_at)
        self.last_modified = from_iso(last_modified)

    @property
    def is_available(self) -> bool:
        return not self.retired and self.available_quantity > 0

    @property
    def on_loan(self) -> int:
        return self.quantity - self.available_quantity

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(isbn={self.isbn!r}, available={self.available_quantity}/{self.quantity})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "quantity": self.quantity,
            "available_quantity": self.available_quantity,
            "categories": self.categories,
            "page_count": self.page_count,
            "published_date": self.published_date,
            "description": self.description,
            "image_url": self.image_url,
            "retired": self.retired,
            "added_at": to_iso(self.added_at),
            "last_modified": to_iso(self.last_modified),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Stores without a list type hand categories back as a JSON string
        cats = data.get("categories")
        if isinstance(cats, str):
            try:
                cats = json.loads(cats)
            except ValueError:
                cats = [cats] if cats else []

        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            quantity=data.get("quantity", 1),
            available_quantity=data.get("available_quantity"),
            publisher=data.get("publisher"),
            categories=cats,
            page_count=data.get("page_count"),
            published_date=data.get("published_date"),
            description=data.get("description"),
            image_url=data.get("image_url"),
            retired=data.get("retired") or False,
            added_at=data.get("added_at"),
            last_modified=data.get("last_modified"),
        )

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ormkit.db.database import Base


class Genre(enum.Enum):
    fiction = "fiction"
    science = "science"


class Author(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    books: Mapped[list["Book"]] = relationship(back_populates="author")


class Book(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    isbn: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    genre: Mapped[Genre] = mapped_column(Enum(Genre), default=Genre.fiction)
    pages: Mapped[int] = mapped_column(Integer, default=0)
    position: Mapped[int] = mapped_column(Integer, default=0)
    available: Mapped[bool] = mapped_column(Boolean, default=True)
    created: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    author_id: Mapped[Optional[int]] = mapped_column(ForeignKey("Author.id"), nullable=True)

    author: Mapped[Optional[Author]] = relationship(back_populates="books")


class BookTag(Base):
    book_id: Mapped[int] = mapped_column(ForeignKey("Book.id"), primary_key=True)
    label: Mapped[str] = mapped_column(String(50), primary_key=True)
    weight: Mapped[int] = mapped_column(Integer, default=1)

    book: Mapped[Book] = relationship()

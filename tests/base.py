import os
import unittest
import uuid
from datetime import date, datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Table, create_engine, delete
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from crudkit.db.session import Base
from crudkit.models.common import SoftDeleteMixin, TimestampMixin, UUIDMixin

book_tags = Table(
    "test_book_tags",
    Base.metadata,
    Column("book_id", ForeignKey("test_books.id"), primary_key=True),
    Column("tag_id", ForeignKey("test_tags.id"), primary_key=True),
)


class Author(Base, UUIDMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "test_authors"
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    country: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    books: Mapped[list["Book"]] = relationship(back_populates="author")


class Book(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "test_books"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    published_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    isbn: Mapped[str | None] = mapped_column(String(20), nullable=True)
    author_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("test_authors.id"), nullable=True)

    author: Mapped["Author"] = relationship(back_populates="books")
    reviews: Mapped[list["Review"]] = relationship(back_populates="book")
    tags: Mapped[list["Tag"]] = relationship(secondary=book_tags)


class Review(Base):
    __tablename__ = "test_reviews"
    review_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("test_books.id"), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[str | None] = mapped_column(String(500), nullable=True)

    book: Mapped["Book"] = relationship(back_populates="reviews")


class Tag(Base):
    __tablename__ = "test_tags"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)


TABLES = [Author.__table__, Tag.__table__, Book.__table__, Review.__table__, book_tags]


def _dt(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class LibraryTestBase(unittest.TestCase):
    """In-memory library catalogue.

    Visible books: 1, 2 (Tolkien), 3 (Le Guin), 4 (Herbert, archived author),
    5 (Pratchett, trashed author), 7 (no author). Book 6 is trashed.
    Author "Emily Unpublished" has no books.
    """

    @classmethod
    def setUpClass(cls):
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autocommit=False, autoflush=False)
        Base.metadata.create_all(bind=cls.engine, tables=TABLES)

    @classmethod
    def tearDownClass(cls):
        Base.metadata.drop_all(bind=cls.engine, tables=TABLES)
        cls.engine.dispose()

    def setUp(self):
        with self.SessionLocal() as db:
            db.execute(delete(book_tags))
            db.execute(delete(Review))
            db.execute(delete(Book))
            db.execute(delete(Tag))
            db.execute(delete(Author))
            db.commit()
            self._seed(db)

        self.db = self.SessionLocal()
        self.addCleanup(self.db.close)

    def _seed(self, db):
        self.tolkien_id = uuid.uuid4()
        self.le_guin_id = uuid.uuid4()
        self.herbert_id = uuid.uuid4()
        self.pratchett_id = uuid.uuid4()
        self.unpublished_id = uuid.uuid4()
        trashed_at = _dt(2026, 3, 1, 12, 0, 0)
        db.add_all(
            [
                Author(id=self.tolkien_id, name="J. R. R. Tolkien", country="UK"),
                Author(id=self.le_guin_id, name="Ursula K. Le Guin", country="US"),
                Author(id=self.herbert_id, name="Frank Herbert", country="US", is_archived=True),
                Author(id=self.pratchett_id, name="Terry Pratchett", country="UK", deleted_at=trashed_at),
                Author(id=self.unpublished_id, name="Emily Unpublished", country="CA"),
            ]
        )
        db.flush()
        fantasy = Tag(id=1, name="fantasy")
        scifi = Tag(id=2, name="scifi")
        db.add_all(
            [
                Book(id=1, title="The Hobbit", price=10, published_on=date(1937, 9, 21), isbn="111",
                     author_id=self.tolkien_id, created_at=_dt(2026, 2, 26, 9, 30, 0), tags=[fantasy]),
                Book(id=2, title="The Silmarillion", price=25, published_on=date(1977, 9, 15), isbn=None,
                     author_id=self.tolkien_id, created_at=_dt(2026, 2, 26, 23, 59, 59), tags=[fantasy]),
                Book(id=3, title="A Wizard of Earthsea", price=15, published_on=date(1968, 1, 1), isbn="333",
                     author_id=self.le_guin_id, created_at=_dt(2026, 2, 27, 0, 0, 0), tags=[fantasy]),
                Book(id=4, title="Dune", price=30, published_on=date(1965, 8, 1), isbn="444",
                     author_id=self.herbert_id, created_at=_dt(2026, 2, 25, 12, 0, 0), tags=[scifi, fantasy]),
                Book(id=5, title="Mort", price=5, published_on=date(1987, 11, 12), isbn="555",
                     author_id=self.pratchett_id, created_at=_dt(2026, 2, 25, 12, 0, 0), tags=[fantasy]),
                Book(id=6, title="Lost Tales", price=20, isbn="666", author_id=self.tolkien_id,
                     created_at=_dt(2026, 2, 20, 12, 0, 0), deleted_at=trashed_at),
                Book(id=7, title="Anonymous Tales", price=8, isbn=None, author_id=None,
                     created_at=_dt(2026, 2, 24, 12, 0, 0)),
            ]
        )
        db.flush()
        db.add_all(
            [
                Review(review_id=1, book_id=1, rating=5, body="classic"),
                Review(review_id=2, book_id=1, rating=4),
                Review(review_id=3, book_id=3, rating=5),
                Review(review_id=4, book_id=4, rating=2, body="too much sand"),
            ]
        )
        db.commit()

    @staticmethod
    def ids(rows) -> list:
        return sorted(row.id for row in rows)

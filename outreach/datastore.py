"""Contact store: a single SQLAlchemy-mapped table with per-operation sessions."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from sqlalchemy import Integer, String, Text, create_engine, event, inspect, select, text, update, delete
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from outreach.config import settings
from outreach.runtime import get_logger, last_n_digits, normalize_number
from outreach.schema import ContactStatus

logger = get_logger(__name__)

SUFFIX_MATCH_DIGITS = 9


# -------------------------------------------------------------------
# Base / model
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class Contact(Base):
    # bound once at import; settings.cache_clear() does not rename the mapped table
    __tablename__ = settings().CONTACTS_TABLE

    rowid: Mapped[int] = mapped_column("rowid", Integer, primary_key=True, autoincrement=True)
    ad_id: Mapped[Optional[str]] = mapped_column("adId", String, nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column("contactName", String, nullable=True)
    agent_name: Mapped[Optional[str]] = mapped_column("agentName", String, nullable=True)
    clean_contact_number: Mapped[Optional[str]] = mapped_column("cleanContactNumber", String, nullable=True)
    city: Mapped[Optional[str]] = mapped_column("city", String, nullable=True)
    property_type: Mapped[Optional[str]] = mapped_column("propertyType", String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column("notes", Text, nullable=True)
    conversation_started: Mapped[str] = mapped_column(
        "conversation_started",
        String,
        nullable=False,
        default=ContactStatus.PENDING.value,
        server_default=ContactStatus.PENDING.value,
    )

    @property
    def normalized_number(self) -> str:
        return normalize_number(self.clean_contact_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            column.name: getattr(self, attr.key)
            for attr in inspect(type(self)).column_attrs
            for column in attr.columns
        }

    def __repr__(self) -> str:
        return f"Contact(rowid={self.rowid!r}, number={self.clean_contact_number!r}, status={self.conversation_started!r})"


# Column name (as stored / exposed to the admin form) -> mapped attribute.
COLUMN_ATTRS: Dict[str, str] = {
    column.name: attr.key
    for attr in inspect(Contact).column_attrs
    for column in attr.columns
}


# -------------------------------------------------------------------
# Engine factory with sane defaults per dialect
# -------------------------------------------------------------------
def _make_engine(url: str):
    is_sqlite = url.startswith("sqlite")
    kwargs: Dict[str, Any] = dict(pool_pre_ping=True, future=True)
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = create_engine(url, **kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.close()

    return engine


def find_matching_contact(contacts: List[Contact], number: str) -> Optional[Contact]:
    """Exact digits match first, then the last-9-digit suffix (country-code variance)."""
    digits = normalize_number(number)
    if not digits:
        return None
    for contact in contacts:
        if contact.normalized_number == digits:
            return contact
    suffix = last_n_digits(digits, SUFFIX_MATCH_DIGITS)
    if suffix:
        for contact in contacts:
            if last_n_digits(contact.normalized_number, SUFFIX_MATCH_DIGITS) == suffix:
                return contact
    return None


# ============================================================
# STORE
# ============================================================


class ContactStore:
    """Read/update access to the contacts table. Each call is its own session."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        self.database_url = (database_url or settings().DATABASE_URL).strip()
        self.engine = _make_engine(self.database_url)
        self._sessions = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    @contextmanager
    def session(self) -> Generator:
        db = self._sessions()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -------------------------- schema
    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    def health(self) -> Dict[str, Any]:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {"ok": True, "url": self.database_url.split("@")[-1]}
        except Exception as e:
            return {"ok": False, "error": str(e)}

    def schema(self) -> List[Dict[str, Any]]:
        columns = []
        for column in Contact.__table__.columns:
            default = column.server_default.arg if column.server_default is not None else ""
            columns.append({
                "name": column.name,
                "type": str(column.type),
                "defaultValue": str(default or ""),
                "notNull": not column.nullable,
                "primaryKey": bool(column.primary_key),
            })
        return columns

    # -------------------------- reads
    def get(self, rowid: int) -> Optional[Contact]:
        with self.session() as db:
            return db.get(Contact, rowid)

    def list_contacts(self) -> List[Contact]:
        with self.session() as db:
            return list(db.scalars(select(Contact).order_by(Contact.rowid.desc())))

    def find_by_normalized_number(self, number: str) -> Optional[Contact]:
        with self.session() as db:
            contacts = list(db.scalars(select(Contact)))
        return find_matching_contact(contacts, number)

    def known_numbers(self) -> set[str]:
        with self.session() as db:
            numbers = db.scalars(select(Contact.clean_contact_number))
            return {normalize_number(n) for n in numbers if normalize_number(n)}

    # -------------------------- writes
    def set_status(self, rowid: int, status: ContactStatus | str) -> bool:
        value = status.value if isinstance(status, ContactStatus) else str(status)
        with self.session() as db:
            result = db.execute(
                update(Contact).where(Contact.rowid == rowid).values(conversation_started=value)
            )
            changed = bool(result.rowcount)
        logger.info("📝 Contact %s status → %s (changed=%s)", rowid, value, changed)
        return changed

    def create(self, fields: Dict[str, Any]) -> Contact:
        """Insert a contact from column-name keyed fields; blank values are ignored."""
        values: Dict[str, Any] = {}
        has_non_status_value = False
        for name, raw in (fields or {}).items():
            attr = COLUMN_ATTRS.get(name)
            if not attr or attr == "rowid":
                continue
            value = raw.strip() if isinstance(raw, str) else raw
            if value in ("", None):
                continue
            if attr != "conversation_started":
                has_non_status_value = True
            values[attr] = value
        if not has_non_status_value:
            raise ValueError("Provide at least one contact field.")

        contact = Contact(**values)
        with self.session() as db:
            db.add(contact)
            db.flush()
        return contact

    def delete(self, rowid: int) -> bool:
        with self.session() as db:
            result = db.execute(delete(Contact).where(Contact.rowid == rowid))
            return bool(result.rowcount)

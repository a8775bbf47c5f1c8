"""
Customer record store consumed by the import pipeline.

The pipeline only talks to the ``CustomerStore`` protocol; ``SqlCustomerStore``
is the SQLAlchemy-backed implementation used by the service. Values cross the
boundary as plain dicts keyed by field name, with dates as ISO strings.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy import Column, Date, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Session

from customer_import.db.session import Base

logger = logging.getLogger(__name__)

DATE_FIELDS = ("last_service_date", "next_service_date")


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class Customer(Base):
    """Production customer record."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    external_id = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=False)
    postal_code = Column(String(10), nullable=True)
    city = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)
    email = Column(String(255), nullable=True)
    contact_person = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    org_number = Column(String(20), nullable=True)
    last_service_date = Column(Date, nullable=True)
    next_service_date = Column(Date, nullable=True)
    service_interval_months = Column(Integer, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


CUSTOMER_FIELDS = (
    "external_id",
    "name",
    "address",
    "postal_code",
    "city",
    "phone",
    "email",
    "contact_person",
    "category",
    "notes",
    "org_number",
    "last_service_date",
    "next_service_date",
    "service_interval_months",
    "latitude",
    "longitude",
)


class CustomerStore(Protocol):
    """Tenant-scoped create/update/lookup operations on customer records."""

    def get(self, organization_id: int, record_id: int) -> Optional[Dict[str, Any]]: ...

    def find_by_external_id(self, organization_id: int, external_id: str) -> Optional[Dict[str, Any]]: ...

    def find_by_name_and_address(
        self, organization_id: int, name: str, address: str
    ) -> Optional[Dict[str, Any]]: ...

    def create(self, organization_id: int, values: Dict[str, Any]) -> int: ...

    def update(self, organization_id: int, record_id: int, values: Dict[str, Any]) -> None: ...

    def delete(self, organization_id: int, record_id: int) -> None: ...


class RecordNotFoundError(LookupError):
    """Raised by the store when a record id does not exist for the tenant."""


def _to_column_value(field: str, value: Any) -> Any:
    if field in DATE_FIELDS and isinstance(value, str):
        return date.fromisoformat(value)
    return value


def _to_dict(customer: Customer) -> Dict[str, Any]:
    values: Dict[str, Any] = {"id": customer.id}
    for field in CUSTOMER_FIELDS:
        value = getattr(customer, field)
        if isinstance(value, date):
            value = value.isoformat()
        values[field] = value
    return values


class SqlCustomerStore:
    """``CustomerStore`` backed by the ``customers`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _load(self, db: Session, organization_id: int, record_id: int) -> Customer:
        customer = (
            db.query(Customer)
            .filter(Customer.organization_id == organization_id, Customer.id == record_id)
            .one_or_none()
        )
        if customer is None:
            raise RecordNotFoundError(f"Customer {record_id} not found")
        return customer

    def get(self, organization_id: int, record_id: int) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            customer = (
                db.query(Customer)
                .filter(Customer.organization_id == organization_id, Customer.id == record_id)
                .one_or_none()
            )
            return _to_dict(customer) if customer else None

    def find_by_external_id(self, organization_id: int, external_id: str) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            customer = (
                db.query(Customer)
                .filter(
                    Customer.organization_id == organization_id,
                    Customer.external_id == external_id,
                )
                .order_by(Customer.id)
                .first()
            )
            return _to_dict(customer) if customer else None

    def find_by_name_and_address(
        self, organization_id: int, name: str, address: str
    ) -> Optional[Dict[str, Any]]:
        """Exact, case-insensitive match on trimmed name and address."""
        with self._session_factory() as db:
            customer = (
                db.query(Customer)
                .filter(
                    Customer.organization_id == organization_id,
                    func.lower(Customer.name) == name.strip().lower(),
                    func.lower(Customer.address) == address.strip().lower(),
                )
                .order_by(Customer.id)
                .first()
            )
            return _to_dict(customer) if customer else None

    def create(self, organization_id: int, values: Dict[str, Any]) -> int:
        with self._session_factory() as db:
            customer = Customer(organization_id=organization_id)
            for field, value in values.items():
                if field in CUSTOMER_FIELDS:
                    setattr(customer, field, _to_column_value(field, value))
            db.add(customer)
            db.commit()
            logger.debug("Created customer %s for organization %s", customer.id, organization_id)
            return customer.id

    def update(self, organization_id: int, record_id: int, values: Dict[str, Any]) -> None:
        with self._session_factory() as db:
            customer = self._load(db, organization_id, record_id)
            for field, value in values.items():
                if field in CUSTOMER_FIELDS:
                    setattr(customer, field, _to_column_value(field, value))
            db.commit()

    def delete(self, organization_id: int, record_id: int) -> None:
        with self._session_factory() as db:
            customer = self._load(db, organization_id, record_id)
            db.delete(customer)
            db.commit()

    def count(self, organization_id: int) -> int:
        with self._session_factory() as db:
            return (
                db.query(func.count(Customer.id))
                .filter(Customer.organization_id == organization_id)
                .scalar()
                or 0
            )

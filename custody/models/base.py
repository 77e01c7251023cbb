from decimal import Decimal
from sqlalchemy import Column, DateTime, Enum, Numeric, String, func
from sqlalchemy.types import TypeDecorator

MONEY_PRECISION = 38
MONEY_SCALE = 18
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_SCALE)


class Money(TypeDecorator):
    """Exact fixed-point amount.

    NUMERIC(38, 18) where the backend has a real decimal type. SQLite would
    hand NUMERIC back through a float, so there the value is kept as its
    canonical 18-place text. Only equality is meaningful in SQL on either
    backend; arithmetic and ordering happen in Python on ``Decimal``.
    """

    impl = Numeric(MONEY_PRECISION, MONEY_SCALE)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(MONEY_PRECISION, MONEY_SCALE, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(str(value)).quantize(MONEY_QUANTUM)
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


def enum_type(enum_cls, name: str) -> Enum:
    # Persist the lowercase values ("completed"), not the member names.
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])

from sqlalchemy import Column, Integer, String
from custody.core.database import Base
from custody.models.base import TimestampMixin


class DerivationCounter(Base, TimestampMixin):
    __tablename__ = "derivation_counters"

    namespace = Column(String(16), primary_key=True)
    next_index = Column(Integer, default=0, nullable=False)

from sqlalchemy import Column, Integer, String
from fieldops.database import Base


class ServiceType(Base):
    """Kind of field service (Water, Electric, ...)."""

    __tablename__ = "service_types"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    label = Column(String(100), nullable=False)
    sort_order = Column(Integer, default=0)

    def __repr__(self):
        return f"<ServiceType {self.code}>"

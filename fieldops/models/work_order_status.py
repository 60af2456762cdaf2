from sqlalchemy import Column, Integer, String, Boolean
from fieldops.database import Base


class WorkOrderStatus(Base):
    """Administrator-configurable work order status (code is what work orders store)."""

    __tablename__ = "work_order_statuses"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    label = Column(String(100), nullable=False)
    color = Column(String(20))
    is_default = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0)

    def __repr__(self):
        return f"<WorkOrderStatus {self.code} ({self.label})>"

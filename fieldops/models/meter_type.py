from sqlalchemy import Column, Integer, String
from fieldops.database import Base


class MeterType(Base):
    """Meter/product catalog entry.

    Work orders reference the string ``product_id``, never the numeric row id.
    """

    __tablename__ = "meter_types"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(255), unique=True, nullable=False, index=True)
    product_label = Column(String(255), nullable=False)
    sort_order = Column(Integer, default=0)

    def __repr__(self):
        return f"<MeterType {self.product_id}>"

from sqlalchemy import Column, Integer, String
from fieldops.database import Base


class TroubleCode(Base):
    __tablename__ = "trouble_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    label = Column(String(255), nullable=False)
    sort_order = Column(Integer, default=0)

    def __repr__(self):
        return f"<TroubleCode {self.code} - {self.label}>"

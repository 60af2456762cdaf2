from sqlalchemy import Column, Integer, String, Text
from fieldops.database import Base


class UserGroup(Base):
    """Assignment group. Work orders store the group *name*."""

    __tablename__ = "user_groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    description = Column(Text)

    def __repr__(self):
        return f"<UserGroup {self.name}>"

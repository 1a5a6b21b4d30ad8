"""
Organization model - hospitals, blood banks and platform admins
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime
from bloodchain.database import Base


ORGANIZATION_TYPES = ("hospital", "bloodbank", "admin")


class Organization(Base):
    """A party that can send and receive ledger messages"""

    __tablename__ = "organizations"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    org_type = Column(String(20), nullable=False)  # hospital, bloodbank, admin

    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.org_type == "admin"

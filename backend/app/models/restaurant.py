"""Restaurant model.

Restaurants are managed elsewhere; this table only anchors ownership of
orders and printers and carries the restaurant's print settings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.clock import utcnow
from app.db.base import Base
from app.models.validators import validate_dict


class Restaurant(Base):
    """A restaurant owning orders and printers."""

    __tablename__ = "restaurants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    print_settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @validates("print_settings")
    def _validate_print_settings(self, key, value):
        return validate_dict(key, value)

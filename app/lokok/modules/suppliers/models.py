from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.lokok.models import Base, JSONType


class SupplierJson(Base):
    """
    One supplier record stored as a JSON blob.
    The blob keeps the spreadsheet column names as keys; only country and
    creator are lifted into columns for filtering.
    """

    __tablename__ = "suppliers_json"
    __table_args__ = (
        Index("idx_suppliers_json_country", "country"),
        Index("idx_suppliers_json_created_by", "created_by_user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    country: Mapped[str | None] = mapped_column(String(10), nullable=True)  # US, CA, MX (CN for legacy sheet rows)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

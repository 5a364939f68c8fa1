from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import String, Text, Integer, Numeric, Date, DateTime, ForeignKey, UniqueConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, SurrogateKey, JSONType


class BillingUpload(Base):
    """One ingestion session. Tracks progress and row statistics per upload id."""
    __tablename__ = "billing_uploads"

    upload_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="processing", index=True)
    rows_received: Mapped[int] = mapped_column(Integer, default=0)
    rows_inserted: Mapped[int] = mapped_column(Integer, default=0)
    rows_skipped_duplicate: Mapped[int] = mapped_column(Integer, default=0)
    batches_failed: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BillingUsageFact(Base):
    """
    One charge line from a billing export. Append-only: written by the fact
    buffer flush, never updated.
    """
    __tablename__ = "billing_usage_facts"

    id: Mapped[int] = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_row_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Dimension references (nullable where the source record lacks the attribute)
    cloud_account_id: Mapped[int | None] = mapped_column(ForeignKey("dim_cloud_accounts.id"), nullable=True, index=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("dim_services.id"), nullable=True, index=True)
    sku_id: Mapped[int | None] = mapped_column(ForeignKey("dim_skus.id"), nullable=True, index=True)
    resource_id: Mapped[int | None] = mapped_column(ForeignKey("dim_resources.id"), nullable=True, index=True)
    region_id: Mapped[int | None] = mapped_column(ForeignKey("dim_regions.id"), nullable=True, index=True)
    sub_account_id: Mapped[int | None] = mapped_column(ForeignKey("dim_sub_accounts.id"), nullable=True, index=True)
    commitment_discount_id: Mapped[int | None] = mapped_column(
        ForeignKey("dim_commitment_discounts.id"), nullable=True, index=True
    )

    # Charge classification
    charge_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    charge_class: Mapped[str | None] = mapped_column(String(50), nullable=True)
    charge_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    charge_frequency: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Quantities
    consumed_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=0)
    consumed_unit: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pricing_quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=0)
    pricing_unit: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Financials at four valuation levels (DECIMAL for money!)
    list_unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    contracted_unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    effective_unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    billed_unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    list_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    contracted_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    effective_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)
    billed_cost: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=0)

    # Period boundaries (date-only)
    billing_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    billing_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    charge_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    charge_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    tags: Mapped[dict] = mapped_column(JSONType, default=dict)
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("upload_id", "source_row_id", name="uix_billing_fact_upload_row"),
        Index("ix_billing_fact_upload_charge_start", "upload_id", "charge_period_start"),
    )

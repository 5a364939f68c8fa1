"""
Dimension tables of the billing star schema.

Every dimension is append-only reference data: a natural key maps to exactly one
surrogate integer id for the lifetime of the store. Rows are created on first
observation by the ingestion resolver and never updated or deleted.
"""
from datetime import datetime
from sqlalchemy import String, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base, SurrogateKey


class DimensionMixin:
    id: Mapped[int] = mapped_column(SurrogateKey, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CloudAccount(DimensionMixin, Base):
    __tablename__ = "dim_cloud_accounts"

    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # 'aws', 'azure', 'gcp'
    billing_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    billing_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    billing_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "billing_account_id", name="uix_dim_cloud_account_natural"),
    )


class Service(DimensionMixin, Base):
    __tablename__ = "dim_services"

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    service_category: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "service_name", name="uix_dim_service_natural"),
    )


class Region(DimensionMixin, Base):
    __tablename__ = "dim_regions"

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    region_code: Mapped[str] = mapped_column(String(64), nullable=False)
    region_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    availability_zone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "region_code", name="uix_dim_region_natural"),
    )


class Sku(DimensionMixin, Base):
    __tablename__ = "dim_skus"

    sku_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    sku_price_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pricing_category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pricing_unit: Mapped[str | None] = mapped_column(String(128), nullable=True)


class Resource(DimensionMixin, Base):
    __tablename__ = "dim_resources"

    resource_id: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    resource_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String(128), nullable=True)


class SubAccount(DimensionMixin, Base):
    __tablename__ = "dim_sub_accounts"

    sub_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    sub_account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class CommitmentDiscount(DimensionMixin, Base):
    __tablename__ = "dim_commitment_discounts"

    commitment_discount_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    commitment_discount_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    commitment_discount_category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    commitment_discount_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

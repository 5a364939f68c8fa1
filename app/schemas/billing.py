"""
Billing Ingestion Schemas

Raw rows arrive from an upstream extraction step with untrusted, loosely typed
fields, so every field is optional and typed ``Any``; the sanitizer does the coercion.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class BillingRowIn(BaseModel):
    """One charge line in the ingestion input contract."""
    model_config = ConfigDict(extra="allow")

    source_row_id: Optional[Any] = None

    # Natural-key dimension attributes
    provider: Optional[Any] = None
    billing_account_id: Optional[Any] = None
    billing_account_name: Optional[Any] = None
    billing_currency: Optional[Any] = None
    service_name: Optional[Any] = None
    service_category: Optional[Any] = None
    region_code: Optional[Any] = None
    region_name: Optional[Any] = None
    availability_zone: Optional[Any] = None
    sku_id: Optional[Any] = None
    sku_price_id: Optional[Any] = None
    pricing_category: Optional[Any] = None
    resource_id: Optional[Any] = None
    resource_name: Optional[Any] = None
    resource_type: Optional[Any] = None
    sub_account_id: Optional[Any] = None
    sub_account_name: Optional[Any] = None
    commitment_discount_id: Optional[Any] = None
    commitment_discount_name: Optional[Any] = None
    commitment_discount_category: Optional[Any] = None
    commitment_discount_type: Optional[Any] = None

    # Charge attributes
    charge_category: Optional[Any] = None
    charge_class: Optional[Any] = None
    charge_description: Optional[Any] = None
    charge_frequency: Optional[Any] = None
    consumed_quantity: Optional[Any] = None
    consumed_unit: Optional[Any] = None
    pricing_quantity: Optional[Any] = None
    pricing_unit: Optional[Any] = None
    list_unit_price: Optional[Any] = None
    contracted_unit_price: Optional[Any] = None
    effective_unit_price: Optional[Any] = None
    billed_unit_price: Optional[Any] = None
    list_cost: Optional[Any] = None
    contracted_cost: Optional[Any] = None
    effective_cost: Optional[Any] = None
    billed_cost: Optional[Any] = None
    billing_period_start: Optional[Any] = None
    billing_period_end: Optional[Any] = None
    charge_period_start: Optional[Any] = None
    charge_period_end: Optional[Any] = None
    tags: Optional[Any] = None


class IngestionResult(BaseModel):
    upload_id: str
    status: str
    rows_received: int = 0
    rows_buffered: int = 0
    rows_inserted: int = 0
    rows_skipped_duplicate: int = 0
    batches_flushed: int = 0
    batches_failed: int = 0
    rows_dropped: int = Field(0, description="Rows lost with failed batches")


class UploadStatusOut(BaseModel):
    """Bookkeeping row of one upload."""
    model_config = ConfigDict(from_attributes=True)

    upload_id: str
    status: str
    rows_received: int = 0
    rows_inserted: int = 0
    rows_skipped_duplicate: int = 0
    batches_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

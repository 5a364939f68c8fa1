import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.dimensions import CloudAccount, Service
from app.modules.ingestion.domain.dimensions import DimensionFamily, DimensionResolver
from app.modules.ingestion.domain.sanitize import sanitize_row


@pytest.mark.asyncio
async def test_same_natural_key_resolves_to_same_id(db):
    resolver = DimensionResolver(db)
    first = await resolver.resolve(DimensionFamily.SERVICE, ("aws", "AmazonEC2"))
    second = await resolver.resolve(DimensionFamily.SERVICE, ("aws", "AmazonEC2"))

    assert first is not None
    assert first == second
    assert resolver.cache_size == 1


@pytest.mark.asyncio
async def test_same_natural_key_across_sessions(session_maker):
    """Two independent ingestion sessions converge on one surrogate key."""
    async with session_maker() as first_session:
        first = await DimensionResolver(first_session).resolve(
            DimensionFamily.CLOUD_ACCOUNT, ("aws", "111122223333"), {"billing_account_name": "Prod"}
        )
    async with session_maker() as second_session:
        second = await DimensionResolver(second_session).resolve(
            DimensionFamily.CLOUD_ACCOUNT, ("aws", "111122223333"), {"billing_account_name": "Renamed"}
        )
        count = (await second_session.execute(select(func.count(CloudAccount.id)))).scalar()
        account = await second_session.get(CloudAccount, second)

    assert first == second
    assert count == 1
    # Attributes are captured on first observation only
    assert account.billing_account_name == "Prod"


@pytest.mark.asyncio
async def test_provider_is_part_of_the_key(db):
    resolver = DimensionResolver(db)
    aws = await resolver.resolve(DimensionFamily.REGION, ("aws", "eu-west-1"))
    gcp = await resolver.resolve(DimensionFamily.REGION, ("gcp", "eu-west-1"))
    assert aws != gcp


@pytest.mark.asyncio
@pytest.mark.parametrize("key", [(), (None,), ("",), ("aws", None), ("aws", "")])
async def test_blank_natural_key_resolves_to_none(db, key):
    resolver = DimensionResolver(db)
    assert await resolver.resolve(DimensionFamily.SERVICE, key) is None
    count = (await db.execute(select(func.count(Service.id)))).scalar()
    assert count == 0


@pytest.mark.asyncio
async def test_store_failure_degrades_to_null_reference(db, monkeypatch):
    resolver = DimensionResolver(db)

    async def broken_lookup(spec, key_values):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(resolver, "_lookup", broken_lookup)

    assert await resolver.resolve(DimensionFamily.SKU, ("sku-1",)) is None
    assert resolver.failures == 1
    assert resolver.cache_size == 0


@pytest.mark.asyncio
async def test_resolve_row_fills_present_dimensions_only(db):
    row = sanitize_row(
        {
            "provider": "aws",
            "billing_account_id": "111122223333",
            "service_name": "AmazonS3",
            "region_code": "us-east-1",
            "resource_id": "arn:aws:s3:::logs",
        },
        upload_id="U1",
    )
    refs = await DimensionResolver(db).resolve_row(row)

    assert refs.cloud_account_id is not None
    assert refs.service_id is not None
    assert refs.region_id is not None
    assert refs.resource_id is not None
    assert refs.sku_id is None
    assert refs.sub_account_id is None
    assert refs.commitment_discount_id is None

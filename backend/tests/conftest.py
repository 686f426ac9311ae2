import copy
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["START_SCHEDULER"] = "false"
os.environ["SHOPIFY_SHOP_URL"] = "test-shop.myshopify.com"
os.environ["SHOPIFY_ACCESS_TOKEN"] = "shpat_test_token_123456"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pricedrop.main import app
from pricedrop.models_sqlalchemy import Base, get_db
from pricedrop.models_sqlalchemy import auction as auction_models  # noqa: F401
from pricedrop.services.auction import AuctionEngine, AuctionStateStore, get_auction_engine
from pricedrop.services.catalog_client import (
    CatalogClient,
    CatalogUnavailableError,
    MutationResult,
    PriceTarget,
    ProductSnapshot,
    VariantSnapshot,
)

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_product(
    product_id: str,
    variants: Iterable[Tuple[str, str, Optional[str], int]],
    *,
    status: str = "active",
    title: Optional[str] = None,
) -> ProductSnapshot:
    """Build a product from ``(variant_id, price, compare_at_price, qty)`` tuples."""
    return ProductSnapshot(
        id=product_id,
        title=title or product_id,
        tags=[],
        status=status,
        variants=[
            VariantSnapshot(
                id=vid,
                price=Decimal(price),
                compare_at_price=Decimal(compare) if compare is not None else None,
                inventory_quantity=qty,
            )
            for vid, price, compare, qty in variants
        ],
    )


class FakeCatalogClient(CatalogClient):
    """In-memory shop. Reads and writes go to ``self.products``.

    The real payload builders of ``apply_discount`` / ``reset_prices`` /
    ``set_compare_at_prices`` are used; only the wire calls are replaced.
    """

    def __init__(self, products: Sequence[ProductSnapshot] = ()) -> None:
        super().__init__(graphql_url="https://test-shop.myshopify.com/graphql.json", access_token="token")
        self.products: List[ProductSnapshot] = list(products)
        self.fail_fetch = False
        self.failing_variant_ids: set = set()
        self.fetch_calls = 0
        self.mutations: List[List[Dict[str, Any]]] = []

    def variant(self, variant_id: str) -> VariantSnapshot:
        for product in self.products:
            for variant in product.variants:
                if variant.id == variant_id:
                    return variant
        raise KeyError(variant_id)

    async def fetch_catalog(self) -> List[ProductSnapshot]:
        self.fetch_calls += 1
        if self.fail_fetch:
            raise CatalogUnavailableError("catalog is down")
        return copy.deepcopy(self.products)

    async def bulk_mutate(self, targets: Sequence[PriceTarget], build_input) -> MutationResult:
        result = MutationResult()
        payloads = []
        for target in targets:
            payload = build_input(target)
            payloads.append(payload)
            if target.variant_id in self.failing_variant_ids:
                result.failed_ids.append(target.variant_id)
                continue
            variant = self.variant(target.variant_id)
            if "price" in payload:
                variant.price = Decimal(payload["price"])
            if "compareAtPrice" in payload:
                variant.compare_at_price = Decimal(payload["compareAtPrice"])
            result.updated_count += 1
        self.mutations.append(payloads)
        return result


class FrozenClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=test_engine)
    try:
        yield TestSessionLocal
    finally:
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def store(session_factory) -> AuctionStateStore:
    return AuctionStateStore(session_factory=session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def catalog() -> FakeCatalogClient:
    return FakeCatalogClient(
        [
            make_product("gid://shopify/Product/1", [("gid://shopify/ProductVariant/11", "100.00", None, 3)]),
        ]
    )


@pytest.fixture
def engine(catalog, store, clock) -> AuctionEngine:
    return AuctionEngine(catalog_client=catalog, store=store, clock=clock)


@pytest.fixture
def client(engine, session_factory) -> Generator[TestClient, None, None]:
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_auction_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()

"""Shopify Admin GraphQL client used by the auction engine.

The client is a pure boundary adapter: it reads the product catalog and
writes variant prices, nothing else. Every catalog shape we have seen from
the API (GraphQL ``edges/node`` connections, ``nodes`` lists and the REST
style ``compare_at_price`` dicts) is normalized into :class:`ProductSnapshot`
and :class:`VariantSnapshot` here so no downstream code has to care.

Price writes go through a single primitive, :meth:`CatalogClient.bulk_mutate`,
which chunks the targets per product, runs chunks concurrently under a small
semaphore, retries throttled calls with exponential backoff and falls back to
per-variant updates when a bulk call fails.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

import asyncio
import httpx

from pricedrop.config import settings
from pricedrop.utils.logger import logger, sanitize_headers


CENT = Decimal("0.01")
HUNDRED = Decimal("100")

PRODUCTS_QUERY = """
query getProducts($first: Int!, $after: String, $query: String, $variantsFirst: Int!) {
  products(first: $first, after: $after, query: $query) {
    pageInfo {
      hasNextPage
      endCursor
    }
    edges {
      node {
        id
        title
        tags
        status
        variants(first: $variantsFirst) {
          edges {
            node {
              id
              price
              compareAtPrice
              inventoryQuantity
            }
          }
        }
      }
    }
  }
}
"""

BULK_UPDATE_MUTATION = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants {
      id
      price
      compareAtPrice
    }
    userErrors {
      field
      message
    }
  }
}
"""

VARIANT_UPDATE_MUTATION = """
mutation productVariantUpdate($input: ProductVariantInput!) {
  productVariantUpdate(input: $input) {
    productVariant {
      id
      price
      compareAtPrice
    }
    userErrors {
      field
      message
    }
  }
}
"""


class CatalogAPIError(Exception):
    """Non-retryable error returned by the catalog API."""


class CatalogThrottledError(CatalogAPIError):
    """Throttling / transient error; safe to retry after a backoff."""


class CatalogUnavailableError(CatalogAPIError):
    """The catalog could not be read at all (first page failed)."""


class CatalogConfigError(CatalogAPIError):
    """Shop URL or access token is not configured."""


@dataclass
class VariantSnapshot:
    """Canonical variant shape used everywhere past the client boundary."""

    id: str
    price: Decimal
    compare_at_price: Optional[Decimal]
    inventory_quantity: int


@dataclass
class ProductSnapshot:
    id: str
    title: str
    tags: List[str]
    status: str
    variants: List[VariantSnapshot]

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"

    @property
    def has_stock(self) -> bool:
        return any(v.inventory_quantity > 0 for v in self.variants)

    @property
    def is_eligible(self) -> bool:
        """Non-draft product with at least one in-stock variant.

        Eligibility is decided per product; all variants of an eligible
        product are mutated together, in stock or not.
        """
        return not self.is_draft and self.has_stock


@dataclass
class PriceTarget:
    """One variant to write, with the original (pre-auction) price."""

    product_id: str
    variant_id: str
    original_price: Decimal


@dataclass
class MutationResult:
    updated_count: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def merge(self, other: "MutationResult") -> "MutationResult":
        self.updated_count += other.updated_count
        self.failed_ids.extend(other.failed_ids)
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {"updated_count": self.updated_count, "failed_ids": list(self.failed_ids)}


# --------------------------------------------------------------------------
# Price helpers
# --------------------------------------------------------------------------


def parse_money(value: Any) -> Optional[Decimal]:
    """Parse an API money value; ``None``, empty and zero mean "not set"."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        # MoneyV2 shape: {"amount": "12.00", "currencyCode": "EUR"}
        value = value.get("amount")
        if value is None:
            return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if amount <= 0:
        return None
    return amount


def format_money(value: Decimal) -> str:
    return str(value.quantize(CENT, rounding=ROUND_HALF_UP))


def discounted_price(original: Decimal, discount_percent: float) -> Decimal:
    """round2(original * (100 - discount) / 100), never below zero."""
    pct = Decimal(str(discount_percent))
    price = (original * (HUNDRED - pct) / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    if price < 0:
        return Decimal("0.00")
    return price


def backoff_delay(retry_index: int, *, base: float, cap: float) -> float:
    """Delay before retry number ``retry_index`` (0-based): 2, 4, 8, 15, 15..."""
    return min(base * (2 ** retry_index), cap)


# --------------------------------------------------------------------------
# Shape normalization
# --------------------------------------------------------------------------


def to_gid(kind: str, raw_id: Any) -> Optional[str]:
    """Return a ``gid://shopify/<kind>/<id>`` id for numeric or gid input."""
    if raw_id is None:
        return None
    text = str(raw_id).strip()
    if text.endswith(".0"):
        text = text[:-2]
    if not text:
        return None
    if text.startswith("gid://"):
        return text
    return f"gid://shopify/{kind}/{text}"


def _iter_connection(value: Any) -> List[Dict[str, Any]]:
    """Flatten a GraphQL connection, a ``nodes`` list or a plain list."""
    if not value:
        return []
    if isinstance(value, dict):
        if "edges" in value:
            return [edge.get("node") or {} for edge in value.get("edges") or []]
        if "nodes" in value:
            return list(value.get("nodes") or [])
        return []
    items: List[Dict[str, Any]] = []
    for item in value:
        if isinstance(item, dict) and isinstance(item.get("node"), dict):
            items.append(item["node"])
        elif isinstance(item, dict):
            items.append(item)
    return items


def _parse_tags(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return [str(t) for t in value]


def normalize_variant(raw: Dict[str, Any]) -> Optional[VariantSnapshot]:
    variant_id = raw.get("admin_graphql_api_id") or to_gid("ProductVariant", raw.get("id"))
    if not variant_id:
        return None

    price = parse_money(raw.get("price"))
    if price is None:
        return None

    compare_raw = raw.get("compareAtPrice", raw.get("compare_at_price"))
    qty_raw = raw.get("inventoryQuantity", raw.get("inventory_quantity"))
    try:
        inventory_quantity = int(qty_raw or 0)
    except (TypeError, ValueError):
        inventory_quantity = 0

    return VariantSnapshot(
        id=str(variant_id),
        price=price,
        compare_at_price=parse_money(compare_raw),
        inventory_quantity=inventory_quantity,
    )


def normalize_product(raw: Dict[str, Any]) -> Optional[ProductSnapshot]:
    product_id = raw.get("admin_graphql_api_id") or to_gid("Product", raw.get("id"))
    if not product_id:
        return None

    variants: List[VariantSnapshot] = []
    for item in _iter_connection(raw.get("variants")):
        variant = normalize_variant(item)
        if variant is not None:
            variants.append(variant)

    return ProductSnapshot(
        id=str(product_id),
        title=(raw.get("title") or "").strip(),
        tags=_parse_tags(raw.get("tags")),
        status=str(raw.get("status") or "active").lower(),
        variants=variants,
    )


# --------------------------------------------------------------------------
# Client
# --------------------------------------------------------------------------


PayloadBuilder = Callable[[PriceTarget], Dict[str, Any]]


class CatalogClient:
    def __init__(
        self,
        *,
        graphql_url: Optional[str] = None,
        access_token: Optional[str] = None,
        page_size: Optional[int] = None,
        variants_per_product: Optional[int] = None,
        status_query: Optional[str] = None,
        page_delay_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        chunk_delay_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        def _pick(value, default):
            return default if value is None else value

        self.graphql_url = graphql_url or settings.shopify_graphql_url
        self.access_token = access_token or settings.SHOPIFY_ACCESS_TOKEN
        self.page_size = _pick(page_size, settings.CATALOG_PAGE_SIZE)
        self.variants_per_product = _pick(variants_per_product, settings.CATALOG_VARIANTS_PER_PRODUCT)
        self.status_query = _pick(status_query, settings.CATALOG_STATUS_QUERY)
        self.page_delay_seconds = _pick(page_delay_seconds, settings.CATALOG_PAGE_DELAY_SECONDS)
        self.batch_size = max(1, _pick(batch_size, settings.BULK_BATCH_SIZE))
        self.chunk_delay_seconds = _pick(chunk_delay_seconds, settings.CHUNK_DELAY_SECONDS)
        self.concurrency = max(1, _pick(concurrency, settings.MUTATION_CONCURRENCY))
        self.max_attempts = max(1, _pick(max_attempts, settings.RETRY_MAX_ATTEMPTS))
        self.retry_base_seconds = _pick(retry_base_seconds, settings.RETRY_BASE_SECONDS)
        self.retry_max_seconds = _pick(retry_max_seconds, settings.RETRY_MAX_SECONDS)
        self.timeout_seconds = _pick(timeout_seconds, settings.HTTP_TIMEOUT_SECONDS)
        self._transport = transport

    # -- low level -----------------------------------------------------------

    def _http_client(self) -> httpx.AsyncClient:
        if not self.graphql_url or not self.access_token:
            raise CatalogConfigError("SHOPIFY_SHOP_URL and SHOPIFY_ACCESS_TOKEN must be configured")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self.access_token,
        }
        logger.debug("Catalog client for %s headers=%s", self.graphql_url, sanitize_headers(headers))
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
            transport=self._transport,
            headers=headers,
        )

    async def _post(
        self, client: httpx.AsyncClient, query: str, variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Single GraphQL round trip. Returns the ``data`` object."""
        try:
            resp = await client.post(self.graphql_url, json={"query": query, "variables": variables})
        except httpx.RequestError as exc:
            raise CatalogThrottledError(f"Catalog request error: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise CatalogThrottledError(
                f"Catalog API status={resp.status_code} body={resp.text[:300]}"
            )
        if resp.status_code != 200:
            raise CatalogAPIError(f"Catalog API status={resp.status_code} body={resp.text[:300]}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise CatalogAPIError(f"Catalog API returned invalid JSON: {exc}") from exc

        errors = body.get("errors")
        if errors:
            codes = {
                (err.get("extensions") or {}).get("code")
                for err in errors
                if isinstance(err, dict)
            }
            if "THROTTLED" in codes:
                raise CatalogThrottledError(f"GraphQL throttled: {errors}")
            raise CatalogAPIError(f"GraphQL errors: {errors}")

        return body.get("data") or {}

    async def _request(
        self, client: httpx.AsyncClient, query: str, variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """``_post`` with bounded exponential backoff on throttling."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._post(client, query, variables)
            except CatalogThrottledError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Catalog request giving up after %d attempts: %s", attempt, exc
                    )
                    raise
                delay = backoff_delay(
                    attempt - 1, base=self.retry_base_seconds, cap=self.retry_max_seconds
                )
                logger.warning(
                    "Catalog request throttled (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    # -- reads ---------------------------------------------------------------

    async def fetch_catalog(self) -> List[ProductSnapshot]:
        """Read every product matching the status query, page by page.

        A failing page ends pagination and returns what was fetched so far
        (degraded, not fatal). Only when the very first page fails is the
        catalog considered unavailable.
        """
        products: List[ProductSnapshot] = []
        cursor: Optional[str] = None
        page = 0

        async with self._http_client() as client:
            while True:
                page += 1
                variables = {
                    "first": self.page_size,
                    "after": cursor,
                    "query": self.status_query or None,
                    "variantsFirst": self.variants_per_product,
                }
                try:
                    data = await self._request(client, PRODUCTS_QUERY, variables)
                except CatalogAPIError as exc:
                    if page == 1:
                        raise CatalogUnavailableError(f"Catalog fetch failed: {exc}") from exc
                    logger.warning(
                        "Catalog fetch degraded: page %d failed (%s); continuing with %d products",
                        page,
                        exc,
                        len(products),
                    )
                    break

                connection = data.get("products") or {}
                for node in _iter_connection(connection):
                    product = normalize_product(node)
                    if product is not None:
                        products.append(product)

                page_info = connection.get("pageInfo") or {}
                cursor = page_info.get("endCursor")
                if not page_info.get("hasNextPage") or not cursor:
                    break

                if self.page_delay_seconds:
                    await asyncio.sleep(self.page_delay_seconds)

        logger.info("Catalog fetch complete: %d products in %d page(s)", len(products), page)
        return products

    # -- writes --------------------------------------------------------------

    async def bulk_mutate(
        self, targets: Sequence[PriceTarget], build_input: PayloadBuilder
    ) -> MutationResult:
        """Write ``build_input(target)`` for every target.

        The bulk endpoint is per product, so targets are grouped by product
        and each group is split into chunks of ``batch_size``. All chunk
        results are joined before returning.
        """
        result = MutationResult()
        if not targets:
            return result

        groups: "OrderedDict[str, List[PriceTarget]]" = OrderedDict()
        for target in targets:
            groups.setdefault(target.product_id, []).append(target)

        chunks = []
        for product_id, items in groups.items():
            for start in range(0, len(items), self.batch_size):
                chunks.append((product_id, items[start:start + self.batch_size]))

        semaphore = asyncio.Semaphore(self.concurrency)

        async with self._http_client() as client:

            async def _run(index: int, product_id: str, chunk: List[PriceTarget]) -> MutationResult:
                async with semaphore:
                    if index >= self.concurrency and self.chunk_delay_seconds:
                        await asyncio.sleep(self.chunk_delay_seconds)
                    return await self._mutate_chunk(client, product_id, chunk, build_input)

            chunk_results = await asyncio.gather(
                *[_run(i, product_id, chunk) for i, (product_id, chunk) in enumerate(chunks)]
            )

        for chunk_result in chunk_results:
            result.merge(chunk_result)

        logger.info(
            "Price mutation finished: %d chunks, %d variants updated, %d failed",
            len(chunks),
            result.updated_count,
            len(result.failed_ids),
        )
        return result

    async def _mutate_chunk(
        self,
        client: httpx.AsyncClient,
        product_id: str,
        chunk: List[PriceTarget],
        build_input: PayloadBuilder,
    ) -> MutationResult:
        variables = {"productId": product_id, "variants": [build_input(t) for t in chunk]}
        try:
            data = await self._request(client, BULK_UPDATE_MUTATION, variables)
            user_errors = (data.get("productVariantsBulkUpdate") or {}).get("userErrors") or []
            if not user_errors:
                return MutationResult(updated_count=len(chunk))
            logger.warning(
                "Bulk update for %s returned user errors %s; falling back to per-variant updates",
                product_id,
                user_errors,
            )
        except CatalogAPIError as exc:
            logger.warning(
                "Bulk update for %s (%d variants) failed: %s; falling back to per-variant updates",
                product_id,
                len(chunk),
                exc,
            )
        return await self._mutate_items(client, chunk, build_input)

    async def _mutate_items(
        self,
        client: httpx.AsyncClient,
        chunk: List[PriceTarget],
        build_input: PayloadBuilder,
    ) -> MutationResult:
        result = MutationResult()
        for target in chunk:
            try:
                data = await self._request(
                    client, VARIANT_UPDATE_MUTATION, {"input": build_input(target)}
                )
            except CatalogAPIError as exc:
                logger.error("Variant %s update failed: %s", target.variant_id, exc)
                result.failed_ids.append(target.variant_id)
                continue

            user_errors = (data.get("productVariantUpdate") or {}).get("userErrors") or []
            if user_errors:
                logger.error("Variant %s update rejected: %s", target.variant_id, user_errors)
                result.failed_ids.append(target.variant_id)
            else:
                result.updated_count += 1
        return result

    async def apply_discount(
        self, targets: Sequence[PriceTarget], discount_percent: float
    ) -> MutationResult:
        def _build(target: PriceTarget) -> Dict[str, Any]:
            return {
                "id": target.variant_id,
                "price": format_money(discounted_price(target.original_price, discount_percent)),
                "compareAtPrice": format_money(target.original_price),
            }

        logger.info("Applying %s%% discount to %d variants", discount_percent, len(targets))
        return await self.bulk_mutate(targets, _build)

    async def reset_prices(self, targets: Sequence[PriceTarget]) -> MutationResult:
        def _build(target: PriceTarget) -> Dict[str, Any]:
            original = format_money(target.original_price)
            return {"id": target.variant_id, "price": original, "compareAtPrice": original}

        logger.info("Resetting prices for %d variants", len(targets))
        return await self.bulk_mutate(targets, _build)

    async def set_compare_at_prices(self, targets: Sequence[PriceTarget]) -> MutationResult:
        """Write ``compareAtPrice`` only; ``price`` is left untouched."""

        def _build(target: PriceTarget) -> Dict[str, Any]:
            return {"id": target.variant_id, "compareAtPrice": format_money(target.original_price)}

        logger.info("Setting compare-at prices for %d variants", len(targets))
        return await self.bulk_mutate(targets, _build)

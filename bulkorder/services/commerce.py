"""
Commerce Capabilities
=====================

Outbound interface the processor and rollback run against. Concrete
commerce backends live outside this service; HttpCommerceClient talks to
one over REST:

    GET    /api/v1/products/{sku}/availability
    GET    /api/v1/products/{sku}/alternatives?quantity=N
    POST   /api/v1/cart/items           {"items": [...]} → {"reference": "..."}
    DELETE /api/v1/cart/items/{reference}
"""

import logging
from typing import List, Optional, Protocol, Sequence

import httpx

from bulkorder.config import settings
from bulkorder.schemas.bulk import AlternativeProduct, CartItem, ProductAvailability

logger = logging.getLogger(__name__)


class CommerceCapabilities(Protocol):
    async def check_availability(self, sku: str) -> ProductAvailability: ...

    async def find_alternatives(self, sku: str, quantity: int) -> List[AlternativeProduct]: ...

    async def add_to_cart(self, items: Sequence[CartItem]) -> Optional[str]: ...

    async def reverse(self, order_ref: str) -> None: ...


class HttpCommerceClient:
    """httpx adapter for a REST commerce backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = (base_url or settings.commerce_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.commerce_api_key
        self._timeout = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout, connect=5.0),
            )
        return self._client

    async def check_availability(self, sku: str) -> ProductAvailability:
        response = await self._get_client().get(f"/api/v1/products/{sku}/availability")
        if response.status_code == 404:
            return ProductAvailability(sku=sku, available=False, quantity_available=0)
        response.raise_for_status()
        return ProductAvailability.model_validate({"sku": sku, **response.json()})

    async def find_alternatives(self, sku: str, quantity: int) -> List[AlternativeProduct]:
        response = await self._get_client().get(
            f"/api/v1/products/{sku}/alternatives",
            params={"quantity": quantity},
        )
        response.raise_for_status()
        return [AlternativeProduct.model_validate(item) for item in response.json().get("alternatives", [])]

    async def add_to_cart(self, items: Sequence[CartItem]) -> Optional[str]:
        response = await self._get_client().post(
            "/api/v1/cart/items",
            json={"items": [item.model_dump(mode="json") for item in items]},
        )
        response.raise_for_status()
        return response.json().get("reference")

    async def reverse(self, order_ref: str) -> None:
        response = await self._get_client().delete(f"/api/v1/cart/items/{order_ref}")
        if response.status_code == 404:
            logger.warning("Cart reference %s already gone on reverse", order_ref)
            return
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


def build_commerce_client() -> HttpCommerceClient:
    return HttpCommerceClient(timeout_s=settings.capability_timeout_s)

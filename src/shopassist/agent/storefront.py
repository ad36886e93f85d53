"""Storefront tools: catalog search, product details, cart and order lookups, policies.

The catalog, carts and orders live behind the storefront REST API; every
handler here is a thin call to it that shapes the response for the model.
"""

import logging
import random
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ToolExecutionFailure
from ..models import CallerContext
from .tools import ToolDefinition

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10
SUGGESTION_COUNT = 5
POLICY_LIMIT = 3
USER_HEADER = "X-User-Id"


def format_lkr(amount: Any) -> str:
    """Format a price as Sri Lankan Rupees, e.g. 'LKR 1,500.00'."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return str(amount)
    return f"LKR {value:,.2f}"


class _ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NoArguments(_ToolInput):
    pass


class SearchProductsInput(_ToolInput):
    query: str = Field(description="The search keywords. Can be a category, name, or description.")
    min_price: float | None = Field(default=None, alias="minPrice", description="Minimum price filter (LKR)")
    max_price: float | None = Field(default=None, alias="maxPrice", description="Maximum price filter (LKR)")


class ProductIdInput(_ToolInput):
    product_id: int = Field(alias="productId", description="The unique numeric ID of the product")


class AddToCartInput(_ToolInput):
    product_id: int = Field(alias="productId", description="The unique numeric ID of the product")
    quantity: int = Field(default=1, ge=1, le=20, description="How many units to add")


class OrderIdInput(_ToolInput):
    order_id: str = Field(alias="orderId", description="The unique identifier of the order")


class PolicyInput(_ToolInput):
    query: str = Field(description="The specific policy question, e.g. 'How do I return an item?'")


class StorefrontClient:
    """Async HTTP client for the storefront REST API."""

    def __init__(self, base_url: str, client_url: str, timeout_seconds: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self.client_url = client_url.rstrip("/")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> Any:
        """Send a request and return decoded JSON, or None for 404.

        Raises:
            httpx.HTTPStatusError: For any other non-2xx response.
            httpx.TransportError: On network failures and timeouts.
        """
        headers = {USER_HEADER: user_id} if user_id else None
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        response = await self._client.request(method, path, params=clean_params or None, json=json, headers=headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def format_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        product_id = product.get("id", product.get("productId"))
        return {
            "id": product_id,
            "name": product.get("name"),
            "price": format_lkr(product.get("price")),
            "description": product.get("description"),
            "image": product.get("image"),
            "category": product.get("category"),
            "product_path": f"{self.client_url}/product/{product_id}",
        }


def _require_user(context: CallerContext, action: str) -> str:
    if not context.user_id:
        raise ToolExecutionFailure(f"User not authenticated. Please log in to {action}.")
    return context.user_id


def _items(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("data", payload.get("items", []))
    return [item for item in payload or [] if isinstance(item, dict)]


def build_storefront_tools(storefront: StorefrontClient) -> List[ToolDefinition]:
    """Create the storefront tool definitions bound to a client."""

    async def search_products(args: Dict[str, Any], context: CallerContext) -> Any:
        query = args["query"].strip()
        if not query:
            raise ToolExecutionFailure("Search query cannot be empty.")
        payload = await storefront.request(
            "GET",
            f"/products/search/{quote(query, safe='')}",
            params={"minPrice": args["min_price"], "maxPrice": args["max_price"], "limit": SEARCH_LIMIT},
        )
        products = _items(payload)[:SEARCH_LIMIT]
        if not products:
            return "No products found matching that query and price range."
        return [storefront.format_product(p) for p in products]

    async def get_product_details(args: Dict[str, Any], context: CallerContext) -> Any:
        product_id = args["product_id"]
        payload = await storefront.request("GET", f"/products/{product_id}")
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not payload:
            return f"Product with ID {product_id} not found. It may have been removed or the ID is incorrect."
        return storefront.format_product(payload)

    async def get_random_suggestions(args: Dict[str, Any], context: CallerContext) -> Any:
        products = _items(await storefront.request("GET", "/products"))
        if not products:
            return "No products are available right now."
        picked = random.sample(products, min(SUGGESTION_COUNT, len(products)))
        return [storefront.format_product(p) for p in picked]

    async def get_all_categories(args: Dict[str, Any], context: CallerContext) -> Any:
        categories = _items(await storefront.request("GET", "/categories"))
        return [
            {
                "name": c.get("name"),
                "description": c.get("description"),
                "total_items": int(c.get("productCount", c.get("total_items", 0)) or 0),
            }
            for c in categories
        ]

    async def add_item_to_cart(args: Dict[str, Any], context: CallerContext) -> Any:
        user_id = _require_user(context, "add items to your cart")
        payload = await storefront.request(
            "PUT",
            f"/orders/add-to-cart/{args['product_id']}",
            json={"quantity": args["quantity"]},
            user_id=user_id,
        )
        if payload is None:
            return f"Product with ID {args['product_id']} not found, nothing was added to the cart."
        return {"status": "added", "productId": args["product_id"], "quantity": args["quantity"], "cart": payload}

    async def read_order_details(args: Dict[str, Any], context: CallerContext) -> Any:
        user_id = _require_user(context, "view your orders")
        order_id = args["order_id"].strip()
        if not order_id:
            raise ToolExecutionFailure("Order ID cannot be empty.")
        payload = await storefront.request("GET", f"/orders/{order_id}", user_id=user_id)
        if not payload:
            return f"Order with ID {order_id} not found for this user."
        return payload.get("data", payload) if isinstance(payload, dict) else payload

    async def consult_policy_handbook(args: Dict[str, Any], context: CallerContext) -> Any:
        docs = _items(await storefront.request("GET", "/policies/search", params={"query": args["query"], "limit": POLICY_LIMIT}))
        if not docs:
            return "No specific policy found for this query."
        return "\n\n".join(str(d.get("content", "")) for d in docs[:POLICY_LIMIT])

    return [
        ToolDefinition(
            name="search-products",
            description=(
                "Search for products using natural language keywords (e.g. 'birthday gift', 'red roses'). "
                "Supports optional minPrice and maxPrice filters in LKR and returns a ranked list."
            ),
            handler=search_products,
            input_model=SearchProductsInput,
            status_message="Browsing our catalog...",
            suggests_products=True,
        ),
        ToolDefinition(
            name="get-product-details",
            description=(
                "Fetch full details for a SINGLE product using its numeric ID. Only use an id from a "
                "previous search result; never guess product IDs."
            ),
            handler=get_product_details,
            input_model=ProductIdInput,
            status_message="Checking product details...",
            suggests_products=True,
        ),
        ToolDefinition(
            name="get-random-product-suggestions",
            description=(
                "Fetch 5 random products. Use ONLY for open requests such as 'Give me some gift ideas' "
                "without specific criteria; use search-products for anything specific."
            ),
            handler=get_random_suggestions,
            input_model=NoArguments,
            status_message="Finding gift ideas...",
            suggests_products=True,
        ),
        ToolDefinition(
            name="get-all-categories",
            description="List product categories with the number of available items in each.",
            handler=get_all_categories,
            input_model=NoArguments,
            status_message="Browsing our catalog...",
        ),
        ToolDefinition(
            name="add-item-to-cart",
            description="Add a product to the authenticated user's cart.",
            handler=add_item_to_cart,
            input_model=AddToCartInput,
            status_message="Updating your cart...",
            result_event="itemAddedToCart",
        ),
        ToolDefinition(
            name="read-order-details",
            description="Retrieve one of the authenticated user's orders by its ID.",
            handler=read_order_details,
            input_model=OrderIdInput,
            status_message="Looking up your orders...",
        ),
        ToolDefinition(
            name="consult_policy_handbook",
            description=(
                "The OFFICIAL knowledge base for company policies (returns, delivery, payments, privacy). "
                "If it returns 'No specific policy found', do not guess."
            ),
            handler=consult_policy_handbook,
            input_model=PolicyInput,
            status_message="Checking store policies...",
        ),
    ]

from decimal import Decimal

from fastapi import Query, Request

from ecommerce.config import settings
from ecommerce.messaging.bus import MessageBus


class ProductSearchParams:
    """
    Catalogue query string for ``GET /api/products``, injected with
    ``Depends()``.  The camelCase aliases are the names clients send.

    ``search_term`` matches name or description case-insensitively, the price
    bounds are inclusive, and ``page`` is 1-based.  ``page_size`` is capped at
    ``settings.MAX_PAGE_SIZE`` rather than rejected when it exceeds it.
    """

    def __init__(
        self,
        search_term: str | None = Query(None, alias="searchTerm"),
        category: str | None = Query(None),
        min_price: Decimal | None = Query(None, alias="minPrice", ge=0),
        max_price: Decimal | None = Query(None, alias="maxPrice", ge=0),
        page: int = Query(1, ge=1),
        page_size: int = Query(settings.DEFAULT_PAGE_SIZE, alias="pageSize", ge=1),
    ) -> None:
        self.search_term = search_term
        self.category = category
        self.min_price = min_price
        self.max_price = max_price
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def get_message_bus(request: Request) -> MessageBus:
    """Return the process-wide bus owned by the application's ServiceRuntime."""
    return request.app.state.runtime.bus

"""
Cursor handling for paginated Cosmos SDK queries.

Both the validator list and the per-validator delegation list return a
``pagination.next_key``. The logic that turns that key into the next request
lives here once and is shared by every crawl.
"""

import base64
import logging
import urllib.parse
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

# Records requested per page. Tunable, not semantically meaningful.
DEFAULT_PAGE_LIMIT = 100


class PaginatedResponse(Protocol):
    """Any response that carries a continuation key for the next page."""

    @property
    def next_key(self) -> Optional[bytes]:
        ...


PageT = TypeVar("PageT", bound=PaginatedResponse)


@dataclass(frozen=True)
class PageRequest:
    """Pagination parameters sent with one query.

    Offset is never sent: it is mutually exclusive with ``key``.
    """

    limit: int = DEFAULT_PAGE_LIMIT
    key: Optional[bytes] = None

    def query_params(self) -> str:
        params = f"pagination.limit={self.limit}"
        if self.key:
            encoded_key = urllib.parse.quote(base64.b64encode(self.key).decode("ascii"), safe="")
            params += f"&pagination.key={encoded_key}"
        return params


def normalize_next_key(raw: Optional[bytes]) -> Optional[bytes]:
    """A zero-length key means there are no further pages."""
    if not raw:
        return None
    return bytes(raw)


def next_page(response: PaginatedResponse, limit: int = DEFAULT_PAGE_LIMIT) -> Optional[PageRequest]:
    """
    Construct the request for the page after ``response``.

    Returns None when the response was the final page.
    """
    key = normalize_next_key(response.next_key)
    if key is None:
        return None
    return PageRequest(limit=limit, key=key)


async def paginate(fetch_page: Callable[[PageRequest], Awaitable[PageT]],
                   limit: int = DEFAULT_PAGE_LIMIT) -> AsyncIterator[PageT]:
    """
    Yield every page of a paginated query, starting with no key.

    Each page is fetched exactly once; the crawl ends on the first page whose
    next key is absent or empty. Errors from ``fetch_page`` propagate.
    """
    if limit < 1:
        raise ValueError(f"Page limit must be positive, got {limit}")

    request = PageRequest(limit=limit)
    page_count = 0
    while True:
        page_count += 1
        logger.debug(f"Fetching page {page_count} (key: {request.key!r})")
        page = await fetch_page(request)
        yield page

        request = next_page(page, limit)
        if request is None:
            logger.debug(f"Pagination exhausted after {page_count} pages")
            return

"""Pagination for billing list endpoints."""
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination


class BoundedPageNumberPagination(PageNumberPagination):
    """Page-number pagination whose client-chosen page size is capped."""

    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 200

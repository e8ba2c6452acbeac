"""Pagination for billing history endpoints."""
from __future__ import annotations

from rest_framework.pagination import PageNumberPagination


class LedgerPageNumberPagination(PageNumberPagination):
    """Page-number pagination with a hard cap on the requested page size."""

    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 200

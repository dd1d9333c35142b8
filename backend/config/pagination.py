from django.conf import settings
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class OptionalPageNumberPagination(PageNumberPagination):
    page_size = settings.API_PAGINATION_DEFAULT_PAGE_SIZE
    page_size_query_param = "page_size"
    max_page_size = settings.API_PAGINATION_MAX_PAGE_SIZE


class OptionalPaginationListMixin:
    """List endpoints return a plain array unless ``page`` is requested."""

    pagination_class = OptionalPageNumberPagination

    def wants_page(self, request) -> bool:
        return "page" in request.query_params or "page_size" in request.query_params

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())
        page = self.paginate_queryset(queryset) if self.wants_page(request) else None
        serializer = self.get_serializer(page if page is not None else queryset, many=True)
        if page is not None:
            return self.get_paginated_response(serializer.data)
        return Response(serializer.data)

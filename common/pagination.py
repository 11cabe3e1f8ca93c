from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for quotation, sale, inventory and transfer lists.

    `?page_size=` is honoured up to `max_page_size` so stock listings used by
    quotation forms can be fetched in one request.
    """

    page_size = 50
    page_size_query_param = "page_size"
    max_page_size = 500

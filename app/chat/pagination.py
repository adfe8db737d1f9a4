"""
Pagination classes for chat API.

Both chat lists and message history use limit/offset pagination because
the client tracks its own offset: it advances by the length of each page
and treats a short page as the end of history.

Design Decisions:
    - Messages come newest-first; the client reverses each page
    - A page shorter than the limit means there is nothing older
    - limit is capped so one request cannot pull the whole history
"""

from rest_framework.pagination import LimitOffsetPagination

from chat.constants import PAGINATION_CONFIG


class ChatLimitOffsetPagination(LimitOffsetPagination):
    """
    Limit/offset pagination for conversations and messages.

    Default: 50 items per page
    Maximum: 100 items per page

    Query parameters:
        limit: Number of items (optional override)
        offset: Number of items to skip
    """

    default_limit = PAGINATION_CONFIG.DEFAULT_LIMIT
    max_limit = PAGINATION_CONFIG.MAX_LIMIT

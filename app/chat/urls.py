"""
URL configuration for chat API.

URL Structure:
    Conversations:
        /conversations/                          GET, POST
        /conversations/{id}/                     GET
        /conversations/{id}/read/                POST

    Messages:
        /conversations/{id}/messages/            GET, POST
        /conversations/{id}/messages/{pk}/       PATCH, DELETE (?for_all=true)

    Presence:
        /presence/bulk/                          POST
        /presence/{user_id}/                     GET

All URLs are prefixed with /api/v1/chat/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from chat.views import (
    BulkPresenceView,
    ConversationViewSet,
    MessageViewSet,
    UserPresenceView,
)

router = DefaultRouter()
router.register(r"conversations", ConversationViewSet, basename="conversation")

app_name = "chat"

urlpatterns = [
    path("", include(router.urls)),
    path("presence/bulk/", BulkPresenceView.as_view(), name="presence-bulk"),
    path("presence/<uuid:user_id>/", UserPresenceView.as_view(), name="presence-user"),
    path(
        "conversations/<uuid:conversation_pk>/messages/",
        MessageViewSet.as_view({"get": "list", "post": "create"}),
        name="conversation-message-list",
    ),
    path(
        "conversations/<uuid:conversation_pk>/messages/<uuid:pk>/",
        MessageViewSet.as_view({"patch": "partial_update", "delete": "destroy"}),
        name="conversation-message-detail",
    ),
]

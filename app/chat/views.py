"""
ViewSets for chat API.

This module provides REST API endpoints for the chat system:
- ConversationViewSet: Conversation list/create/detail and mark-as-read
- MessageViewSet: Send, list, edit and delete (nested under conversation)
- UserPresenceView / BulkPresenceView: Presence lookups

URL Structure:
    /api/v1/chat/conversations/                          GET, POST
    /api/v1/chat/conversations/{id}/                     GET
    /api/v1/chat/conversations/{id}/read/                POST
    /api/v1/chat/conversations/{id}/messages/            GET, POST
    /api/v1/chat/conversations/{id}/messages/{pk}/       PATCH, DELETE
    /api/v1/chat/presence/bulk/                          POST
    /api/v1/chat/presence/{user_id}/                     GET

Design Decisions:
    - All operations use the service layer for business logic
    - Message mutations raise core.exceptions errors, rendered by
      core.exceptions.api_exception_handler
    - ServiceResult failures are mapped to HTTP status by error code
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import (
    OpenApiParameter,
    OpenApiResponse,
    extend_schema,
    extend_schema_view,
)
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from chat.models import ConversationType
from chat.pagination import ChatLimitOffsetPagination
from chat.serializers import (
    BulkPresenceRequestSerializer,
    ConversationCreateSerializer,
    ConversationDetailSerializer,
    ConversationListSerializer,
    MessageCreateSerializer,
    MessageSerializer,
    MessageUpdateSerializer,
    PresenceSerializer,
)
from chat.services import ConversationService, MessageService, PresenceService

User = get_user_model()

# ServiceResult error codes that are not plain 400s
ERROR_STATUS = {
    "CONVERSATION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NOT_PARTICIPANT": status.HTTP_403_FORBIDDEN,
    "presence_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def failure_response(result) -> Response:
    """Render a failed ServiceResult with the status its error code maps to."""
    return Response(
        result.to_response(),
        status=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
    )


def parse_bool(value) -> bool:
    return str(value).lower() in ("1", "true", "yes")


@extend_schema_view(
    list=extend_schema(
        operation_id="list_conversations",
        summary="List conversations",
        tags=["Chat - Conversations"],
    ),
    create=extend_schema(
        operation_id="create_conversation",
        summary="Create conversation",
        request=ConversationCreateSerializer,
        responses={201: ConversationDetailSerializer},
        tags=["Chat - Conversations"],
    ),
    retrieve=extend_schema(
        operation_id="get_conversation",
        summary="Get conversation",
        tags=["Chat - Conversations"],
    ),
)
class ConversationViewSet(
    mixins.ListModelMixin,
    viewsets.GenericViewSet,
):
    """
    ViewSet for conversation operations.

    list:
        Get all conversations for the current user, most recent activity
        first, with the caller's unread counter and last message summary.

    create:
        Create a new conversation (direct or group).
        For direct: returns existing if found, creates if not.

    retrieve:
        Get conversation details including every participant's unread counter.

    read:
        Mark conversation as read.
    """

    permission_classes = [IsAuthenticated]
    pagination_class = ChatLimitOffsetPagination
    lookup_value_regex = "[0-9a-fA-F-]{36}"

    def get_queryset(self):
        return ConversationService.list_for_user(self.request.user)

    def get_serializer_class(self):
        if self.action == "create":
            return ConversationCreateSerializer
        if self.action == "retrieve":
            return ConversationDetailSerializer
        return ConversationListSerializer

    def create(self, request):
        """Create a conversation (direct or group)."""
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        participant_ids = data["participant_ids"]

        if data["conversation_type"] == ConversationType.DIRECT:
            other_user = User.objects.get(id=participant_ids[0])
            result = ConversationService.create_direct(request.user, other_user)
        else:
            members = sorted(
                User.objects.filter(id__in=participant_ids),
                key=lambda user: participant_ids.index(user.id),
            )
            result = ConversationService.create_group(
                creator=request.user,
                members=members,
                title=data.get("title", ""),
            )

        if not result.success:
            return failure_response(result)

        output_serializer = ConversationDetailSerializer(
            result.data, context={"request": request}
        )
        return Response(output_serializer.data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        result = ConversationService.get_for_user(pk, request.user)
        if not result.success:
            return failure_response(result)

        serializer = ConversationDetailSerializer(result.data, context={"request": request})
        return Response(serializer.data)

    @extend_schema(
        operation_id="mark_conversation_read",
        summary="Mark conversation as read",
        description=(
            "Reset the caller's unread counter, record read receipts on every "
            "message from other participants and notify the chat."
        ),
        request=None,
        responses={
            200: OpenApiResponse(description="Conversation marked as read"),
            403: OpenApiResponse(description="Not a participant in this conversation"),
            404: OpenApiResponse(description="Conversation not found"),
        },
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        """Mark conversation as read."""
        participant = MessageService.mark_as_read(pk, request.user)
        return Response(
            {
                "status": "read",
                "unread_count": participant.unread_count,
                "last_read_at": participant.last_read_at,
            }
        )


@extend_schema_view(
    list=extend_schema(
        operation_id="list_messages",
        summary="List messages",
        description=(
            "Visible history of the conversation, newest first. Messages deleted "
            "for everyone and messages the caller deleted for themselves are excluded."
        ),
        parameters=[
            OpenApiParameter("limit", OpenApiTypes.INT, description="Page size (max 100)"),
            OpenApiParameter("offset", OpenApiTypes.INT, description="Messages to skip"),
        ],
        tags=["Chat - Messages"],
    ),
    create=extend_schema(
        operation_id="send_message",
        summary="Send message",
        request=MessageCreateSerializer,
        responses={
            201: MessageSerializer,
            400: OpenApiResponse(description="Empty message, content too long or invalid media"),
            403: OpenApiResponse(description="Not a participant in this conversation"),
            404: OpenApiResponse(description="Conversation not found"),
        },
        tags=["Chat - Messages"],
    ),
    partial_update=extend_schema(
        operation_id="edit_message",
        summary="Edit message",
        description=(
            "Edit the content of a message you sent. Edits are allowed within "
            "15 minutes of sending. Unchanged content returns the message as is."
        ),
        request=MessageUpdateSerializer,
        responses={
            200: MessageSerializer,
            400: OpenApiResponse(description="Empty content or content too long"),
            403: OpenApiResponse(description="Not the sender, or edit window expired"),
            404: OpenApiResponse(description="Message not found"),
        },
        tags=["Chat - Messages"],
    ),
    destroy=extend_schema(
        operation_id="delete_message",
        summary="Delete message",
        description=(
            "Delete a message for yourself, or for everyone with for_all=true. "
            "Deleting for everyone is limited to the sender within 15 minutes; "
            "staff users may delete any message."
        ),
        parameters=[
            OpenApiParameter(
                "for_all",
                OpenApiTypes.BOOL,
                description="Delete for every participant instead of only yourself",
            ),
        ],
        responses={
            204: OpenApiResponse(description="Message deleted"),
            403: OpenApiResponse(description="Not allowed, or delete window expired"),
            404: OpenApiResponse(description="Message not found"),
            409: OpenApiResponse(description="Message already deleted"),
        },
        tags=["Chat - Messages"],
    ),
)
class MessageViewSet(viewsets.GenericViewSet):
    """
    ViewSet for message operations within a conversation.

    Every action delegates to MessageService, which checks participation,
    authorship and time windows and raises typed errors.
    """

    permission_classes = [IsAuthenticated]
    pagination_class = ChatLimitOffsetPagination
    serializer_class = MessageSerializer

    def get_queryset(self):
        return MessageService.get_visible_messages(
            self.kwargs.get("conversation_pk"), self.request.user
        )

    def list(self, request, conversation_pk=None):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)

        if page is not None:
            serializer = MessageSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)

        serializer = MessageSerializer(queryset, many=True)
        return Response(serializer.data)

    def create(self, request, conversation_pk=None):
        """Send a message."""
        serializer = MessageCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        message = MessageService.send_message(
            conversation_id=conversation_pk,
            sender=request.user,
            content=serializer.validated_data.get("content"),
            media=serializer.validated_data.get("media"),
        )
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, conversation_pk=None, pk=None):
        """Edit a message within the allowed time window."""
        serializer = MessageUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        message = MessageService.edit_message(
            message_id=pk,
            editor=request.user,
            new_content=serializer.validated_data["content"],
            conversation_id=conversation_pk,
        )
        return Response(MessageSerializer(message).data)

    def destroy(self, request, conversation_pk=None, pk=None):
        MessageService.delete_message(
            message_id=pk,
            requester=request.user,
            for_all=parse_bool(request.query_params.get("for_all", "false")),
            conversation_id=conversation_pk,
        )
        return Response(status=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Presence Views
# =============================================================================


class UserPresenceView(APIView):
    """
    Get presence status for a specific user.

    GET /api/v1/chat/presence/{user_id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_user_presence",
        summary="Get user presence",
        description=(
            "Get the presence status for a specific user. Returns current status "
            "(online, away, offline) and last seen timestamp."
        ),
        parameters=[
            OpenApiParameter(
                name="user_id",
                type=OpenApiTypes.UUID,
                location=OpenApiParameter.PATH,
                description="UUID of the user to query",
            ),
        ],
        responses={
            200: OpenApiResponse(
                response=PresenceSerializer,
                description="User's presence status",
            ),
        },
        tags=["Chat - Presence"],
    )
    def get(self, request, user_id):
        result = PresenceService.get_presence(user_id)
        if not result.success:
            return failure_response(result)

        return Response(PresenceSerializer(result.data).data)


class BulkPresenceView(APIView):
    """
    Get presence status for multiple users.

    POST /api/v1/chat/presence/bulk/

    Payload:
        user_ids: List of user IDs to query
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_bulk_presence",
        summary="Get presence for multiple users",
        description="Limited to 100 user IDs per request.",
        request=BulkPresenceRequestSerializer,
        responses={
            200: OpenApiResponse(
                response=PresenceSerializer(many=True),
                description="List of presence statuses for requested users",
            ),
            400: OpenApiResponse(description="Invalid user IDs or too many IDs requested"),
        },
        tags=["Chat - Presence"],
    )
    def post(self, request):
        serializer = BulkPresenceRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PresenceService.get_bulk_presence(serializer.validated_data["user_ids"])
        if not result.success:
            return failure_response(result)

        return Response(PresenceSerializer(result.data, many=True).data)

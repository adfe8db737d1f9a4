"""
Authentication views.

Token issuance is provided by rest_framework_simplejwt:
    - Obtain: /api/v1/auth/token/
    - Refresh: /api/v1/auth/token/refresh/

This module only adds the current-user endpoint.
"""

from drf_spectacular.utils import extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from authentication.serializers import UserSerializer


class CurrentUserView(APIView):
    """
    Return the authenticated user.

    URL: /api/v1/auth/me/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Get current user",
        tags=["Auth"],
        responses={200: UserSerializer},
    )
    def get(self, request):
        return Response(UserSerializer(request.user).data)

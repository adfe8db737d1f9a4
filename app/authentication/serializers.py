"""
Serializers for authentication endpoints.
"""

from rest_framework import serializers

from authentication.models import User


class UserSerializer(serializers.ModelSerializer):
    """
    Read serializer for User.

    Used by /api/v1/auth/me/ and embedded in chat payloads.
    """

    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = [
            "id",
            "email",
            "first_name",
            "last_name",
            "full_name",
            "avatar_url",
            "is_staff",
        ]
        read_only_fields = fields

    def get_full_name(self, obj) -> str:
        return obj.get_full_name()


class UserSummarySerializer(serializers.ModelSerializer):
    """Compact user representation for participant lists."""

    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ["id", "full_name", "avatar_url"]
        read_only_fields = fields

    def get_full_name(self, obj) -> str:
        return obj.get_full_name()

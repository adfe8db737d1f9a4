"""
Authentication application.

Email-based user accounts and JWT access for the chat API and the
WebSocket endpoint.

Key components:
    - User model: Custom email-based user with a moderator flag (is_staff)
    - Token endpoints: simplejwt obtain/refresh plus the current-user view

Usage:
    from authentication.models import User
"""

"""
Tests for chat app.

This package contains test modules for:
- test_services.py: Conversation, message and presence services
- test_views.py: REST API endpoint tests
- test_consumers.py / test_middleware.py: WebSocket consumer and JWT auth
- test_broadcast.py / test_connections.py / test_typing.py: realtime fan-out
- test_client_*.py: Chat synchronization client

Usage:
    pytest chat/tests/
    pytest chat/tests/test_consumers.py
"""

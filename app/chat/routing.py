"""
WebSocket URL routing for the chat application.

URL Patterns:
    ws/chat/ - One socket per client session, carrying every chat of the user

Authentication:
    JWT token should be passed as query parameter (?token=<jwt_access_token>)
    or as the "access_token, <jwt>" subprotocol pair. JWTAuthMiddleware
    validates it and attaches the user to the consumer's scope.

The session registry and typing coordinator are built once per process in
config/asgi.py and handed to every consumer instance.
"""

from django.urls import path

from chat import consumers


def build_websocket_urlpatterns(connection_manager=None, typing_coordinator=None):
    """URL patterns whose consumers share the given manager and coordinator."""
    return [
        path(
            "ws/chat/",
            consumers.ChatConsumer.as_asgi(
                connection_manager=connection_manager,
                typing_coordinator=typing_coordinator,
            ),
        ),
    ]

"""
ASGI entry point for serving the Flask app under hypercorn.

Plain HTTP goes to the Flask app through asgiref's ``WsgiToAsgi``. Lifespan
messages are acknowledged so hypercorn can start and stop cleanly; websocket
connections are refused because the service has no streaming endpoints.
"""

import logging

from asgiref.wsgi import WsgiToAsgi

logger = logging.getLogger(__name__)

_LIFESPAN_ACKS = {
    "lifespan.startup": "lifespan.startup.complete",
    "lifespan.shutdown": "lifespan.shutdown.complete",
}


async def _run_lifespan(receive, send):
    while True:
        event = await receive()
        ack = _LIFESPAN_ACKS.get(event["type"])
        if ack:
            await send({"type": ack})
        if event["type"] == "lifespan.shutdown":
            return


def create_asgi_app(flask_app):
    """Return an ASGI callable serving *flask_app*."""
    http_app = WsgiToAsgi(flask_app)

    async def app(scope, receive, send):
        kind = scope["type"]
        if kind == "http":
            logger.debug("[asgi] %s %s", scope.get("method"), scope.get("path"))
            await http_app(scope, receive, send)
        elif kind == "lifespan":
            await _run_lifespan(receive, send)
        elif kind == "websocket":
            await send({"type": "websocket.close", "code": 1003})

    return app

"""HTTP gateway relaying movie catalog lookups and range-aware video streams."""

from .app import create_app
from .gateway import MovieGateway
from .settings import GatewaySettings

__all__ = ["GatewaySettings", "MovieGateway", "create_app"]

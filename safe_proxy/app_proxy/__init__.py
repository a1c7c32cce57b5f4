from .forwarder import forward_request
from .websocket_tunnel import open_tunnel

__all__ = ["forward_request", "open_tunnel"]

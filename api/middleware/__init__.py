from .request_id import RequestIDMiddleware, peer_ip
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "peer_ip",
]

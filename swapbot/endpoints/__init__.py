from .health import EndpointHealthStore
from .ledger import Web3Ledger
from .pool import Endpoint, EndpointHealth, EndpointPool, HealthReport, LedgerClient, LogStream
from .settings import EndpointConfig, EndpointPoolSettings
from .stream import LogHandler, WebSocketLogStream

__all__ = [
    "Endpoint",
    "EndpointConfig",
    "EndpointHealth",
    "EndpointHealthStore",
    "EndpointPool",
    "EndpointPoolSettings",
    "HealthReport",
    "LedgerClient",
    "LogHandler",
    "LogStream",
    "WebSocketLogStream",
    "Web3Ledger",
]

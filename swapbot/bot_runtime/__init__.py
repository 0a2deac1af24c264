from .logging import setup_logger
from .runner import (
    RuntimeDependencies,
    bootstrap_dependencies,
    build_dependencies,
    heartbeat_loop,
    run_strategy,
    wait_with_stop,
)
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "RuntimeDependencies",
    "bootstrap_dependencies",
    "build_dependencies",
    "heartbeat_loop",
    "run_strategy",
    "setup_logger",
    "wait_with_stop",
]

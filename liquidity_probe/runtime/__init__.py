from .logging import setup_logger
from .settings import ProbeSettings

__all__ = [
    "ProbeSettings",
    "setup_logger",
]

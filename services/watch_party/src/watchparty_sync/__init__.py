"""Watch party synchronization and chat-log broadcast service."""

from .app import create_app
from .config import package_version

__version__ = package_version()

__all__ = ["create_app", "__version__"]

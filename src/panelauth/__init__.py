"""
PanelAuth - Control Panel Identity Core
Authentication, session and access-control services for the server-management panel.
"""

__version__ = "0.1.0"
__author__ = "VPanel Team"

from panelauth.core.config import settings
from panelauth.core.logging import get_logger

__all__ = ["settings", "get_logger", "__version__"]

"""
Root logger setup.

Modules log through ``logging.getLogger(__name__)``; this only decides the
level and format once, at application startup.
"""

from __future__ import annotations

import logging
from typing import Optional

from tradiechat.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger from ``settings.log_level``."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )
    # Socket.IO / Engine.IO are chatty at INFO.
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)

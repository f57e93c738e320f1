from __future__ import annotations

import logging

from lexhost.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not _configured:
        logging.basicConfig(format=_LOG_FORMAT)
        _configured = True
    root.setLevel(resolved)

"""Root logger configuration for CLI entry points.

Library modules only ever call ``logging.getLogger(__name__)``; handlers
and levels are installed once, here.
"""

from __future__ import annotations

import logging

from retour.config import RetourSettings

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(cfg: RetourSettings) -> None:
    """Install a stream handler on the root logger at ``cfg.log_level``.

    Calling this more than once only adjusts the level.
    """
    root = logging.getLogger()
    level = logging.DEBUG if cfg.debug else getattr(
        logging, cfg.log_level.upper(), logging.INFO
    )
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)

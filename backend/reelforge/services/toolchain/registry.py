"""Toolchain registry.

Routes ``settings.toolchain.kind`` to the matching implementation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from reelforge.services.toolchain.base import Toolchain

if TYPE_CHECKING:
    from reelforge.config import Settings

logger = logging.getLogger(__name__)


def get_toolchain(settings: "Settings") -> Toolchain:
    """Return the toolchain configured in ``settings``.

    - "placeholder" -> PlaceholderToolchain (stand-in artifacts, no external tools)
    - anything else -> CommandToolchain (configured command templates)
    """
    if settings.toolchain.kind == "placeholder":
        from reelforge.services.toolchain.placeholder import PlaceholderToolchain

        logger.debug("Using placeholder toolchain")
        return PlaceholderToolchain()

    from reelforge.services.toolchain.command import CommandToolchain

    logger.debug("Using command toolchain")
    return CommandToolchain(settings)

"""reelforge - multi-language short-video pipeline orchestrator.

This module provides startup validation functions to ensure the external
media tooling is available before the daemon starts claiming work.
Call validate_dependencies() during daemon startup.
"""

import logging
import shutil
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies(binaries: tuple[str, ...] = ("ffmpeg",)) -> None:
    """Validate required system binaries are available.

    Each binary is invoked with ``-version`` so that a broken install fails
    fast instead of surfacing halfway through a render.

    Args:
        binaries: Executable names that must resolve on PATH.

    Raises:
        RuntimeError: If a binary is not found or not functional.
    """
    for binary in binaries:
        if shutil.which(binary) is None:
            raise RuntimeError(
                f"{binary} not found on PATH. Install {binary} to run the media toolchain.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg"
            )
        try:
            result = subprocess.run(
                [binary, "-version"],
                capture_output=True,
                check=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"{binary} is installed but not functional: {e}") from e
        version_line = result.stdout.split("\n")[0]
        logger.info(f"{binary} validated: {version_line}")

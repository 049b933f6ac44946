"""Media toolchain abstraction layer.

Usage:
    from reelforge.services.toolchain import get_toolchain

    toolchain = get_toolchain(settings)
    text = await toolchain.generate_script(ctx, prompt="...")
"""

from reelforge.services.toolchain.base import FinalVideoOptions, Toolchain, ToolchainError, ToolContext
from reelforge.services.toolchain.registry import get_toolchain

__all__ = ["FinalVideoOptions", "Toolchain", "ToolchainError", "ToolContext", "get_toolchain"]

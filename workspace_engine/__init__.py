"""
Workspace Engine

Installs, runs and self-updates workflows and apps inside a workspace.
"""

import importlib.metadata

__version__ = importlib.metadata.version("workspace-engine")

from .context import EngineContext, build_context
from .errors import EngineError

__all__ = [
    "EngineContext",
    "EngineError",
    "build_context",
]

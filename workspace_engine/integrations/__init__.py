"""
Clients for the remote services the engine talks to.
"""

from .identity import AccountService, IdentityProvider
from .workspace_service import WorkspaceService

__all__ = ["AccountService", "IdentityProvider", "WorkspaceService"]

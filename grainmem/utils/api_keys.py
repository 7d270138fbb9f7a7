"""
Embedding API key resolution: workspace-owned key (BYOK) first, platform key otherwise.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from .logging_config import get_logger

logger = get_logger(__name__)

EMBEDDING_KEY_PROVIDER = 'openrouter'


class ApiKeyError(Exception):
    """Custom exception for API key resolution errors."""
    pass


@dataclass(frozen=True)
class ResolvedApiKey:
    api_key: str
    uses_byok: bool


class WorkspaceKeyStore(Protocol):

    async def get_workspace_api_key(self, workspace_id: str, provider: str) -> Optional[str]:
        ...


class ApiKeyResolver:
    """Pick the key an embedding call is made (and billed) with."""

    def __init__(self, platform_api_key: Optional[str], workspace_keys: Optional[WorkspaceKeyStore] = None):
        self.platform_api_key = platform_api_key
        self.workspace_keys = workspace_keys

    async def resolve(self, workspace_id: Optional[str] = None) -> ResolvedApiKey:
        """
        Resolve the embedding key for a workspace.

        Raises:
            ApiKeyError: If neither a workspace key nor a platform key is available
        """
        if workspace_id and self.workspace_keys is not None:
            workspace_key = await self.workspace_keys.get_workspace_api_key(workspace_id, EMBEDDING_KEY_PROVIDER)
            if workspace_key:
                logger.debug(f'Using workspace-owned embedding key for workspace {workspace_id}')
                return ResolvedApiKey(api_key=workspace_key, uses_byok=True)

        if not self.platform_api_key:
            raise ApiKeyError('OPENROUTER_API_KEY is not set')
        return ResolvedApiKey(api_key=self.platform_api_key, uses_byok=False)

"""
Storage and secrets collaborators used by the pipeline.

Only the interfaces matter to the pipeline; the local implementations here
back the CLI and can be swapped for remote object storage or a key service.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

from dotenv import load_dotenv

from vibe_gen.errors import PersistenceError
from vibe_gen.models import ProviderKind, new_id


class ArtifactStore(ABC):
    """Content-addressable store for generated documents."""

    @abstractmethod
    async def put(self, content: str, key: Optional[str] = None) -> str:
        """Store content under key (or a fresh key) and return its URL."""

    @abstractmethod
    async def get(self, url: str) -> str:
        """Load content previously stored at url."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """URL a key is (or would be) stored at."""


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts as files under an output directory."""

    def __init__(self, output_dir: Union[str, Path] = "outputs"):
        """
        Initialize artifact store.

        Args:
            output_dir: Root directory for stored artifacts.
        """
        self.output_dir = Path(output_dir).resolve()
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.output_dir / key).resolve()
        if self.output_dir not in path.parents:
            raise PersistenceError(f"Artifact key escapes output directory: {key}")
        return path

    def url_for(self, key: str) -> str:
        return self._path_for(key).as_uri()

    async def put(self, content: str, key: Optional[str] = None) -> str:
        """
        Write content to disk.

        Args:
            content: Text content to store.
            key: Relative path under the output directory.

        Returns:
            file:// URL of the stored artifact.
        """
        path = self._path_for(key or f"artifacts/{new_id()}.html")

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        return path.as_uri()

    async def get(self, url: str) -> str:
        parsed = urlparse(url)
        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else self._path_for(url)
        if not path.exists():
            raise PersistenceError(f"Artifact not found: {url}")
        try:
            return await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e


class SecretsVault(ABC):
    """Source of per-user provider API keys."""

    @abstractmethod
    def get_api_key(self, user_id: Optional[str], provider: ProviderKind) -> Optional[str]:
        """Return the key for provider, or None when the user has none."""


ENV_KEYS = {
    ProviderKind.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    ProviderKind.OPENAI: ("OPENAI_API_KEY",),
    ProviderKind.GOOGLE: ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
}


class EnvSecretsVault(SecretsVault):
    """Reads provider keys from environment variables (single-user)."""

    def __init__(self):
        load_dotenv()

    def get_api_key(self, user_id: Optional[str], provider: ProviderKind) -> Optional[str]:
        for name in ENV_KEYS[provider]:
            value = os.getenv(name)
            if value:
                return value
        return None


class InMemorySecretsVault(SecretsVault):
    """Keys held in memory, keyed by (user_id, provider)."""

    def __init__(self, keys: Optional[Dict[Tuple[Optional[str], ProviderKind], str]] = None):
        self._keys = dict(keys or {})

    def set_api_key(self, user_id: Optional[str], provider: ProviderKind, key: str):
        self._keys[(user_id, provider)] = key

    def get_api_key(self, user_id: Optional[str], provider: ProviderKind) -> Optional[str]:
        return self._keys.get((user_id, provider)) or self._keys.get((None, provider))

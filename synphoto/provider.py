# Copyright (c) 2025-2026 Luc Vincent. All Rights Reserved.
"""
Photo provider boundary.
Defines the photo item model and the contract the pipeline expects from a
remote photo service client.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


class ProviderError(Exception):
    """Base error raised by photo provider clients."""


class AuthenticationError(ProviderError):
    """The provider rejected our credentials or the session expired."""


@dataclass(frozen=True)
class PhotoItem:
    """A photo as known to the pipeline."""
    path: str                            # File name as shown by the provider
    url: Optional[str] = None            # Fetch URL (thumbnail) if available
    created: int = 0                     # Epoch milliseconds
    modified: int = 0                    # Epoch milliseconds
    provider_id: Optional[int] = None    # Provider's unit id
    space_id: Optional[int] = None       # 0 = personal, 1 = shared/team
    file_path: Optional[str] = None      # Server-side path, used for original downloads
    person_id: Optional[int] = None      # Person album the item came from

    @property
    def identity(self) -> str:
        """Stable identity used for deduplication and the shown tracker."""
        if self.provider_id is None:
            return self.path
        return f"{self.provider_id}_{self.space_id or 0}"


class PhotoProvider(ABC):
    """
    Client for a remote photo service.

    Implementations never need to succeed: every call may return an empty
    list or None, and the pipeline degrades gracefully. Only
    AuthenticationError is expected to escape.
    """

    @abstractmethod
    def authenticate(self) -> bool:
        """Establish a session. Returns False when no session could be opened."""

    @abstractmethod
    def list_photos(self, offset: int = 0, limit: int = 100) -> List[PhotoItem]:
        """List one page of photos matching the configured filter."""

    @abstractmethod
    def download_bytes(self, url: str) -> Optional[bytes]:
        """Download a photo (usually a thumbnail) by URL."""

    @abstractmethod
    def download_original(
        self,
        provider_id: int,
        space_id: Optional[int] = None,
        file_path: Optional[str] = None,
        person_id: Optional[int] = None
    ) -> Optional[bytes]:
        """Download the original file for a photo."""

    def get_exif_metadata(self, provider_id: int, space_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Return the raw EXIF payload for a photo, if the service offers one."""
        return None

    def logout(self) -> None:
        """End the session, if the service has one."""


def dedupe_photos(items: Iterable[PhotoItem]) -> List[PhotoItem]:
    """
    Remove duplicate photos by identity.

    The last occurrence of an identity wins, at the position where the
    identity was first seen.
    """
    by_identity: Dict[str, PhotoItem] = {}
    for item in items:
        by_identity[item.identity] = item
    return list(by_identity.values())

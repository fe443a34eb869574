import logging
from typing import Optional
from urllib.parse import quote
import requests
from cachetools import LRUCache
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

DEFAULT_AVATAR = "/noprofile.png"


class AvatarResolver:
    """
    Turns stored avatar references into displayable URLs.

    Absolute URLs pass through. Storage paths are signed through the signing
    endpoint when one is configured, otherwise mapped onto the public storage
    base URL. Successful resolutions are memoized in a bounded LRU; failures
    fall back to the placeholder and are not cached.
    """

    def __init__(self, signing_url: Optional[str] = None, public_base_url: Optional[str] = None,
                 max_entries: int = 256, timeout: float = 3):
        self._signing_url = signing_url
        self._public_base_url = public_base_url
        self._timeout = timeout
        self._entries = LRUCache(maxsize=max_entries)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def _sign(self, path: str) -> str:
        response = requests.get(self._signing_url, params={"path": path}, timeout=self._timeout)
        response.raise_for_status()
        url = response.json().get("url")
        if not url:
            raise ValueError("signing endpoint returned no url")
        return url

    async def resolve(self, path: Optional[str]) -> str:
        if not path:
            return DEFAULT_AVATAR
        if path.startswith("http"):
            return path

        cached = self._entries.get(path)
        if cached is not None:
            return cached

        if self._signing_url:
            try:
                url = await run_in_threadpool(self._sign, path)
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Avatar signing failed for {path}: {e}")
                return DEFAULT_AVATAR
        elif self._public_base_url:
            url = f"{self._public_base_url}/storage/v1/object/public/{quote(path)}"
        else:
            return DEFAULT_AVATAR

        self._entries[path] = url
        return url

"""Preview lookup for the track being played.

Audio is best effort: ``resolve_audio`` never raises and returns ``None`` on
any failure so a round can go ahead without sound.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from loguru import logger

from .db import settings
from .errors import ExternalServiceError
from .models import AudioInfo

Resolver = Callable[[str, str], Awaitable[Optional[AudioInfo]]]


class DeezerResolver:
    """Searches the public Deezer API (no auth) for a playable 30s preview."""

    def __init__(self, base_url: str = settings.AUDIO_API_URL, timeout_seconds: float = settings.AUDIO_TIMEOUT_SECONDS):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_seconds)

    async def _search(self, query: str) -> Dict[str, Any]:
        url = f"{self.base_url}/search"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.get(url, params={"q": query, "limit": 5}) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise ExternalServiceError(f"Deezer HTTP {resp.status} for {query!r}")
                    return await resp.json()
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(f"Deezer timeout for {query!r}") from e
        except aiohttp.ClientError as e:
            raise ExternalServiceError(f"Deezer connection error for {query!r}") from e

    async def __call__(self, title: str, artist: str) -> Optional[AudioInfo]:
        query = f"{title} {artist}".strip()
        data = await self._search(query)

        for item in data.get("data") or []:
            if item.get("preview"):
                album = item.get("album") or {}
                return AudioInfo(
                    preview_url=item["preview"],
                    duration_seconds=item.get("duration"),
                    cover_art_url=album.get("cover_medium"),
                    source_link=item.get("link"),
                )

        logger.info(f"No Deezer preview for {query!r}")
        return None


async def resolve_audio(resolver: Resolver, title: str, artist: str, timeout_seconds: float) -> Optional[AudioInfo]:
    try:
        return await asyncio.wait_for(resolver(title, artist), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Audio lookup timed out after {timeout_seconds}s for {title!r} - {artist!r}")
    except ExternalServiceError as exc:
        logger.warning(f"Audio lookup failed: {exc}")
    except Exception:
        logger.exception(f"Unexpected audio resolver error for {title!r} - {artist!r}")
    return None

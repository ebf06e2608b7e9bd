from __future__ import annotations

import logging
from typing import FrozenSet, List

import httpx

from lib.errors import UnsupportedContentTypeError
from lib.platforms.models import ContentType, Platform, ResolvedLink, TrackRecord

logger = logging.getLogger(__name__)


class PlatformAdapter:
    """
    One upstream music platform.

    Subclasses implement ``fetch_playlist`` and/or ``fetch_track_or_album``
    and list what they handle in ``supported_content_types``.
    """

    platform: Platform
    display_name: str = ""
    supported_content_types: FrozenSet[ContentType] = frozenset()
    # True when platform_track_id can be used with the NetEase lyrics API
    provides_lyrics_ids: bool = False

    def supports(self, content_type: ContentType) -> bool:
        return content_type in self.supported_content_types

    def ensure_supported(self, content_type: ContentType) -> None:
        if not self.supports(content_type):
            raise UnsupportedContentTypeError(self.display_name or self.platform.value, content_type.value)

    async def fetch_playlist(
        self, url_or_id: str, client: httpx.AsyncClient | None = None
    ) -> List[TrackRecord]:
        raise UnsupportedContentTypeError(self.display_name, ContentType.PLAYLIST.value)

    async def fetch_track_or_album(
        self,
        content_type: ContentType,
        content_id: str,
        client: httpx.AsyncClient | None = None,
        source_url: str | None = None,
    ) -> TrackRecord:
        raise UnsupportedContentTypeError(self.display_name, content_type.value)

    async def fetch(self, link: ResolvedLink, client: httpx.AsyncClient | None = None) -> List[TrackRecord]:
        self.ensure_supported(link.content_type)
        logger.info(f"[{self.display_name}] fetch type={link.content_type.value} id={link.content_id}")
        if link.content_type == ContentType.PLAYLIST:
            return await self.fetch_playlist(link.source_url or link.content_id, client=client)
        record = await self.fetch_track_or_album(
            link.content_type, link.content_id, client=client, source_url=link.source_url
        )
        return [record]

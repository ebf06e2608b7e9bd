from functools import lru_cache
from typing import Dict, Type

from lib.platforms.applemusic import AppleMusicAdapter
from lib.platforms.base import PlatformAdapter
from lib.platforms.models import Platform
from lib.platforms.netease import NeteaseAdapter
from lib.platforms.qqmusic import QQMusicAdapter
from lib.platforms.spotify import SpotifyAdapter

ADAPTER_CLASSES: Dict[Platform, Type[PlatformAdapter]] = {
    Platform.NETEASE: NeteaseAdapter,
    Platform.SPOTIFY: SpotifyAdapter,
    Platform.APPLE_MUSIC: AppleMusicAdapter,
    Platform.QQ_MUSIC: QQMusicAdapter,
}


@lru_cache(maxsize=None)
def get_adapter(platform: Platform) -> PlatformAdapter:
    # Shared so the Spotify token cache lives for the whole process
    return ADAPTER_CLASSES[platform]()

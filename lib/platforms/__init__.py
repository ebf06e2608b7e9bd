"""
Platform adapters: one module per upstream music service.

Entry points:
  - lib.platforms.registry.get_adapter(platform) -> PlatformAdapter
  - lib.platforms.models: TrackRecord, ResolvedLink, Platform, ContentType
"""

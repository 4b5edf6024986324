"""
Provider portal configuration.

Portal URLs, selector overrides and bot credentials are data, not code: admins
edit them through the admin API and the provider strategies read them here.
Reads go through a TTLCache owned by the store; every write invalidates the
affected provider so the next job sees the new values.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from api.config import config
from api.database import get_setting, set_setting
from core.cache import TTLCache

logger = logging.getLogger(__name__)

URL_KEY = "rpa_provider_url_{provider}"
SELECTORS_KEY = "rpa_selectors_{provider}"
CREDENTIALS_KEY = "rpa_credentials_{provider}"


@dataclass
class ProviderConfig:
    provider: str
    portal_url: Optional[str] = None
    selectors: Dict[str, str] = field(default_factory=dict)
    credentials: Dict[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.portal_url)

    def public_view(self) -> Dict:
        """Config as shown to admins (credential values masked)."""
        return {
            "provider": self.provider,
            "portal_url": self.portal_url,
            "selectors": dict(self.selectors),
            "credentials": {k: "***" for k in self.credentials},
        }


def _load_json_map(raw: Optional[str], key: str) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed JSON in setting {key}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring non-object JSON in setting {key}")
        return {}
    return {str(k): str(v) for k, v in data.items()}


class ProviderConfigStore:
    def __init__(self, ttl_seconds: Optional[float] = None):
        self._cache = TTLCache(ttl_seconds if ttl_seconds is not None else config.PROVIDER_CONFIG_TTL_SECONDS)

    async def get(self, provider: str) -> ProviderConfig:
        return await self._cache.get_or_load(provider, lambda: self._load(provider))

    async def _load(self, provider: str) -> ProviderConfig:
        url_key = URL_KEY.format(provider=provider)
        selectors_key = SELECTORS_KEY.format(provider=provider)
        credentials_key = CREDENTIALS_KEY.format(provider=provider)
        return ProviderConfig(
            provider=provider,
            portal_url=(await get_setting(url_key)) or None,
            selectors=_load_json_map(await get_setting(selectors_key), selectors_key),
            credentials=_load_json_map(await get_setting(credentials_key), credentials_key),
        )

    async def update(
        self,
        provider: str,
        *,
        portal_url: Optional[str] = None,
        selectors: Optional[Dict[str, str]] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> ProviderConfig:
        """Persist whichever fields are given, then drop the cached copy."""
        if portal_url is not None:
            await set_setting(URL_KEY.format(provider=provider), portal_url.strip())
        if selectors is not None:
            await set_setting(SELECTORS_KEY.format(provider=provider), json.dumps(selectors))
        if credentials is not None:
            await set_setting(CREDENTIALS_KEY.format(provider=provider), json.dumps(credentials))
        self._cache.invalidate(provider)
        logger.info(f"Provider config updated: {provider}")
        return await self.get(provider)

    def invalidate(self, provider: Optional[str] = None):
        self._cache.invalidate(provider)


# Singleton instance for global access
_store: Optional[ProviderConfigStore] = None


def get_provider_config_store() -> ProviderConfigStore:
    global _store
    if _store is None:
        _store = ProviderConfigStore()
    return _store

"""
RuleConfig Provider
===================

Looks up the processing configuration of an agent in the configuration store.

- HTTPRuleConfigProvider: GET {base_url}/v1/agent/{uuid}/config
- CachingRuleConfigProvider: thread-safe TTL cache around any provider
"""

from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Optional, Tuple

import requests
from pydantic import ValidationError

from circulator_stream.interfaces import RuleConfigSource
from circulator_stream.logging_utils import get_component_logger
from circulator_stream.rules.schema import AgentProcessingConfig

logger = get_component_logger(__name__, "config_provider")


class ConfigFetchError(Exception):
    """Configuration store unreachable or answered with an unusable body."""
    pass


class ConfigNotFoundError(ConfigFetchError):
    """Configuration store has no configuration for the agent."""
    pass


class HTTPRuleConfigProvider:
    """
    Configuration store client.

    The store answers with an envelope ``{"code", "message", "config": {...}}``;
    a bare configuration object is accepted too.

    Args:
        base_url: Store base URL (e.g. http://localhost:8080)
        timeout: HTTP timeout in seconds
        session: requests.Session (injected in tests)

    Example:
        >>> provider = HTTPRuleConfigProvider("http://localhost:8080")
        >>> config = provider.get_config("a1b2c3")
        >>> [rule.name for rule in config.rules]
        ['moving_average', 'outlier_detection']
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def config_url(self, agent_uuid: str) -> str:
        return f"{self.base_url}/v1/agent/{agent_uuid}/config"

    def get_config(self, agent_uuid: str) -> AgentProcessingConfig:
        url = self.config_url(agent_uuid)

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ConfigFetchError(f"Config store request failed: {e}") from e

        if response.status_code == 404:
            raise ConfigNotFoundError(f"No configuration for agent {agent_uuid}")
        if response.status_code != 200:
            raise ConfigFetchError(
                f"Config store returned HTTP {response.status_code} for agent {agent_uuid}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ConfigFetchError(f"Config store returned invalid JSON: {e}") from e

        if isinstance(body, dict) and "config" in body:
            body = body["config"]
        if not body:
            raise ConfigNotFoundError(f"No configuration for agent {agent_uuid}")

        try:
            config = AgentProcessingConfig.model_validate(body)
        except ValidationError as e:
            raise ConfigFetchError(f"Invalid configuration for agent {agent_uuid}: {e}") from e

        logger.debug(
            f"Loaded configuration for agent {agent_uuid}",
            extra={"event": "config_loaded", "agent_uuid": agent_uuid, "rule_count": len(config.rules)},
        )
        return config

    def close(self) -> None:
        self.session.close()


class CachingRuleConfigProvider:
    """
    Thread-safe TTL cache in front of another provider.

    Errors from the wrapped provider are never cached. A TTL of 0 disables
    caching (every call goes to the wrapped provider).

    Args:
        inner: Wrapped provider
        ttl_seconds: Time-to-live of a cached configuration

    Example:
        >>> provider = CachingRuleConfigProvider(HTTPRuleConfigProvider(url), ttl_seconds=30)
        >>> provider.get_config(agent_uuid)   # fetched
        >>> provider.get_config(agent_uuid)   # cached
        >>> provider.invalidate(agent_uuid)
    """

    def __init__(self, inner: RuleConfigSource, ttl_seconds: float = 0.0):
        self.inner = inner
        self._cache: Dict[str, Tuple[AgentProcessingConfig, datetime]] = {}
        self._lock = Lock()
        self._ttl = timedelta(seconds=ttl_seconds)

    def get_config(self, agent_uuid: str) -> AgentProcessingConfig:
        if self._ttl <= timedelta(0):
            return self.inner.get_config(agent_uuid)

        with self._lock:
            entry = self._cache.get(agent_uuid)
            if entry is not None:
                config, fetched_at = entry
                if datetime.now() - fetched_at <= self._ttl:
                    return config
                del self._cache[agent_uuid]

        config = self.inner.get_config(agent_uuid)

        with self._lock:
            self._cache[agent_uuid] = (config, datetime.now())
        return config

    def invalidate(self, agent_uuid: Optional[str] = None) -> None:
        """Drop the cached configuration of one agent, or of all agents."""
        with self._lock:
            if agent_uuid is None:
                self._cache.clear()
            else:
                self._cache.pop(agent_uuid, None)

        logger.info(
            "Configuration cache invalidated",
            extra={"event": "config_cache_invalidated", "agent_uuid": agent_uuid or "*"},
        )

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

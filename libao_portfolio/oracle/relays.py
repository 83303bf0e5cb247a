"""Request relays: ordered fallback endpoints for upstream HTTP fetches.

Upstream quote, search and news hosts are reached either directly or
through public relay services. Each relay is a small strategy object that
knows how to build its request URL and how to unwrap the body it returns.
A RelayChain tries them in a fixed priority order and gives up only after
every relay has failed.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote

import requests

from libao_portfolio.utils.exceptions import ConfigurationError, DataQualityError
from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; libao-portfolio/0.1)",
    "Accept": "application/json, text/xml, text/html;q=0.9, */*;q=0.8",
}

# URL templates for relays that pass the upstream body through unchanged
RAW_RELAY_TEMPLATES = {
    "corsproxy": "https://corsproxy.io/?{url}",
    "codetabs": "https://api.codetabs.com/v1/proxy?quest={url}",
    "allorigins-raw": "https://api.allorigins.win/raw?url={url}",
}

ALLORIGINS_TEMPLATE = "https://api.allorigins.win/get?url={url}"


class RelayEndpoint(ABC):
    """One way of reaching an upstream URL."""

    name: str = "relay"

    @abstractmethod
    def build_url(self, target_url: str) -> str:
        """Return the URL to request for target_url."""
        pass

    def unwrap(self, response: requests.Response, as_json: bool) -> Any:
        """Extract the upstream payload from the relay's response.

        Raises:
            ValueError: If the body is not valid JSON when JSON is expected
        """
        return response.json() if as_json else response.text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class DirectRelay(RelayEndpoint):
    """Requests the upstream URL itself."""

    name = "direct"

    def build_url(self, target_url: str) -> str:
        return target_url


class RawRelay(RelayEndpoint):
    """Pass-through relay built from a "{url}" template.

    Example:
        >>> relay = RawRelay("https://corsproxy.io/?{url}", name="corsproxy")
        >>> relay.build_url("https://example.com/a?b=1")
        'https://corsproxy.io/?https%3A%2F%2Fexample.com%2Fa%3Fb%3D1'
    """

    def __init__(self, template: str, name: Optional[str] = None):
        if "{url}" not in template:
            raise ConfigurationError(f"Relay template must contain '{{url}}': {template}")
        self.template = template
        self.name = name or template

    def build_url(self, target_url: str) -> str:
        return self.template.format(url=quote(target_url, safe=""))


class AllOriginsRelay(RelayEndpoint):
    """Relay that wraps the upstream body as JSON {"contents": "..."}."""

    name = "allorigins"

    def __init__(self, template: str = ALLORIGINS_TEMPLATE):
        self.template = template

    def build_url(self, target_url: str) -> str:
        return self.template.format(url=quote(target_url, safe=""))

    def unwrap(self, response: requests.Response, as_json: bool) -> Any:
        contents = response.json().get("contents")
        if not isinstance(contents, str):
            raise DataQualityError("allorigins response has no string 'contents'")
        return json.loads(contents) if as_json else contents


def build_relay(spec: str) -> RelayEndpoint:
    """Build a relay from a config value.

    Args:
        spec: "direct", "allorigins", a known raw relay name
            (corsproxy, codetabs, allorigins-raw) or a custom "{url}" template

    Returns:
        RelayEndpoint instance

    Raises:
        ConfigurationError: If spec is not recognized
    """
    key = spec.strip()
    if key == "direct":
        return DirectRelay()
    if key == "allorigins":
        return AllOriginsRelay()
    if key in RAW_RELAY_TEMPLATES:
        return RawRelay(RAW_RELAY_TEMPLATES[key], name=key)
    if "{url}" in key:
        return RawRelay(key)
    raise ConfigurationError(f"Unknown relay: {spec}")


def build_relays(specs: Iterable[str]) -> List[RelayEndpoint]:
    return [build_relay(spec) for spec in specs]


class RelayChain:
    """Tries relays in priority order until one returns a usable payload.

    Timeouts, connection errors, non-2xx responses and malformed bodies
    all advance to the next relay. Nothing is raised to the caller.

    Example:
        >>> chain = RelayChain(build_relays(["direct", "corsproxy"]), timeout=3.5)
        >>> data = chain.fetch("https://query1.finance.yahoo.com/v8/finance/chart/AAPL")
    """

    def __init__(
        self,
        relays: Sequence[RelayEndpoint],
        timeout: float = 3.5,
        session: Optional[requests.Session] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        """Initialize relay chain.

        Args:
            relays: Relays in priority order
            timeout: Per-attempt timeout in seconds
            session: Optional requests session (module-level requests.get otherwise)
            headers: Request headers (defaults to DEFAULT_HEADERS)
        """
        if not relays:
            raise ConfigurationError("RelayChain needs at least one relay")
        if timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {timeout}")

        self.relays = list(relays)
        self.timeout = timeout
        self.session = session
        self.headers = dict(headers) if headers is not None else dict(DEFAULT_HEADERS)

    def fetch(
        self,
        target_url: str,
        as_json: bool = True,
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> Optional[Any]:
        """Fetch target_url through the first relay that succeeds.

        Args:
            target_url: Upstream URL
            as_json: Decode the payload as JSON (text otherwise)
            accept: Payload check; a rejected body advances to the next relay

        Returns:
            Decoded payload, or None when every relay failed
        """
        get = self.session.get if self.session is not None else requests.get

        for relay in self.relays:
            url = relay.build_url(target_url)
            try:
                response = get(url, timeout=self.timeout, headers=self.headers)
                if not 200 <= response.status_code < 300:
                    logger.debug(
                        "Relay %s returned HTTP %s for %s",
                        relay.name,
                        response.status_code,
                        target_url,
                    )
                    continue
                payload = relay.unwrap(response, as_json)
            except requests.Timeout:
                logger.debug("Relay %s timed out after %.1fs for %s", relay.name, self.timeout, target_url)
                continue
            except requests.RequestException as e:
                logger.debug("Relay %s failed for %s: %s", relay.name, target_url, e)
                continue
            except (ValueError, AttributeError, TypeError) as e:
                logger.debug("Relay %s returned a malformed body for %s: %s", relay.name, target_url, e)
                continue

            if payload is None or payload == "":
                continue
            if accept is not None and not accept(payload):
                logger.debug("Relay %s returned an unusable payload for %s", relay.name, target_url)
                continue

            logger.debug("Fetched %s via relay %s", target_url, relay.name)
            return payload

        logger.debug("All %d relays failed for %s", len(self.relays), target_url)
        return None

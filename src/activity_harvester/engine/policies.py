"""Per-domain error policies and the immutable per-attempt client config.

Some sources fail in characteristic ways: an anti-scraping site answers 403
until the client identity changes, a host with a flaky TLS stack fails the
handshake intermittently, and a host whose DNS record is gone will never
resolve.  Each such behaviour is an :class:`ErrorPolicy` registered by name;
``Settings.domain_error_policies`` maps domains to policy names.

The engine consults the policy in two places:

- ``prepare(config, attempt)`` returns the :class:`ClientConfig` for an
  attempt.  A fresh frozen value is built each time, so concurrent workers
  never share mutable client state.
- ``is_retryable(error)`` classifies an :class:`ExtractionError` as
  transient (retry with backoff) or terminal (record and stop).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Mapping, Optional

from activity_harvester.core.exceptions import ExtractionError

# ---------------------------------------------------------------------------
# Client configuration
# ---------------------------------------------------------------------------

#: User agents rotated by the anti-scraping policy, indexed by attempt number.
USER_AGENT_POOL: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
)


@dataclass(frozen=True)
class ClientConfig:
    """Presentation parameters for one extraction attempt.

    Attributes:
        user_agent: Client identity string sent to the target site.
        timeout_seconds: Timeout for the extraction request.
        headers: Extra request headers as ``(name, value)`` pairs.
        attempt: Zero-based attempt number this config was prepared for.
    """

    user_agent: str
    timeout_seconds: float
    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    attempt: int = 0

    def header_dict(self) -> dict[str, str]:
        return dict(self.headers)


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def _message(error: ExtractionError) -> str:
    return str(error).lower()


def default_is_retryable(error: ExtractionError) -> bool:
    """Timeouts, connection failures, 429 and 5xx are transient; other 4xx are not."""
    status = error.status_code
    if status is None:
        return True
    if status == 429 or status >= 500:
        return True
    return False


def _anti_scraping_is_retryable(error: ExtractionError) -> bool:
    if error.status_code == 403 or "forbidden" in _message(error):
        return True
    return default_is_retryable(error)


_TLS_MARKERS = ("tls", "ssl", "certificate")


def _tls_flaky_is_retryable(error: ExtractionError) -> bool:
    if any(marker in _message(error) for marker in _TLS_MARKERS):
        return True
    return default_is_retryable(error)


_DNS_MARKERS = (
    "no such host",
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "name resolution",
    "getaddrinfo",
)


def _dns_broken_is_retryable(error: ExtractionError) -> bool:
    if any(marker in _message(error) for marker in _DNS_MARKERS):
        return False
    return default_is_retryable(error)


def _identity(config: ClientConfig, attempt: int) -> ClientConfig:
    return replace(config, attempt=attempt)


def _rotate_user_agent(config: ClientConfig, attempt: int) -> ClientConfig:
    if attempt == 0:
        return replace(config, attempt=attempt)
    return replace(
        config,
        user_agent=USER_AGENT_POOL[(attempt - 1) % len(USER_AGENT_POOL)],
        attempt=attempt,
    )


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorPolicy:
    """How the engine treats failures for the domains mapped to it.

    Attributes:
        name: Registry name, e.g. ``"anti_scraping"``.
        classify: Returns True when an error is worth retrying.
        prepare_config: Builds the client config for an attempt number.
    """

    name: str
    classify: Callable[[ExtractionError], bool] = default_is_retryable
    prepare_config: Callable[[ClientConfig, int], ClientConfig] = _identity

    def is_retryable(self, error: ExtractionError) -> bool:
        return self.classify(error)

    def prepare(self, config: ClientConfig, attempt: int) -> ClientConfig:
        return self.prepare_config(config, attempt)


DEFAULT_POLICY = ErrorPolicy(name="default")

POLICIES: dict[str, ErrorPolicy] = {
    DEFAULT_POLICY.name: DEFAULT_POLICY,
    "anti_scraping": ErrorPolicy(
        name="anti_scraping",
        classify=_anti_scraping_is_retryable,
        prepare_config=_rotate_user_agent,
    ),
    "tls_flaky": ErrorPolicy(name="tls_flaky", classify=_tls_flaky_is_retryable),
    "dns_broken": ErrorPolicy(name="dns_broken", classify=_dns_broken_is_retryable),
}


class PolicyTable:
    """Lookup table from domain to :class:`ErrorPolicy`.

    A domain matches an entry exactly or as a subdomain of it, so
    ``events.peps.org`` uses the policy registered for ``peps.org``.

    Args:
        domain_policies: Mapping of domain to policy name.

    Raises:
        ValueError: If a policy name is not registered in :data:`POLICIES`.
    """

    def __init__(self, domain_policies: Mapping[str, str]) -> None:
        unknown = sorted(set(domain_policies.values()) - set(POLICIES))
        if unknown:
            raise ValueError(f"Unknown error policies: {', '.join(unknown)}")
        self._table = {
            domain.lower().removeprefix("www."): POLICIES[name]
            for domain, name in domain_policies.items()
        }

    def for_domain(self, domain: Optional[str]) -> ErrorPolicy:
        if not domain:
            return DEFAULT_POLICY
        host = domain.lower().removeprefix("www.")
        while host:
            policy = self._table.get(host)
            if policy is not None:
                return policy
            _, _, host = host.partition(".")
        return DEFAULT_POLICY

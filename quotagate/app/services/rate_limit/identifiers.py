"""Rate-limit identifier resolution.

The identifier names the entity whose counters are incremented. It is
case- and format-sensitive and used verbatim in bucket keys.
"""

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple

from quotagate.app.core.logging import get_logger
from quotagate.app.exceptions import IdentifierResolutionError

logger = get_logger(__name__)

UNKNOWN_ADDRESS = "unknown"

FORWARDED_FOR_HEADER = "x-forwarded-for"


class IdentifierMode(str, Enum):
    IP = "ip"
    CALLER_KEY = "caller_key"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RequestContext:
    """Request facts needed for admission, captured once per request.

    Attributes:
        path: Request path used for route overrides
        remote_addr: Address of the direct peer, if known
        forwarded_for: Addresses listed in X-Forwarded-For, left to right
        caller_key: Identifier attached by the upstream authentication layer
        method: HTTP method
    """
    path: str = "/"
    remote_addr: Optional[str] = None
    forwarded_for: Tuple[str, ...] = ()
    caller_key: Optional[str] = None
    method: str = "GET"

    @classmethod
    def from_request(cls, request: Any) -> "RequestContext":
        """Build a context from a Starlette request.

        The caller key is read from ``request.state.caller_key``, which the
        authentication layer sets before admission runs.
        """
        header = request.headers.get(FORWARDED_FOR_HEADER, "")
        forwarded = tuple(part.strip() for part in header.split(",") if part.strip())
        return cls(
            path=request.url.path,
            remote_addr=request.client.host if request.client else None,
            forwarded_for=forwarded,
            caller_key=getattr(request.state, "caller_key", None),
            method=request.method,
        )


def normalize_address(address: Optional[str]) -> str:
    """Canonicalize an address string; missing values become ``"unknown"``."""
    if address is None or not address.strip():
        return UNKNOWN_ADDRESS
    address = address.strip()
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return address
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def client_address(context: RequestContext, trusted_proxy_hops: int = 0) -> str:
    """Pick the caller's address from the peer address and forwarded chain.

    With ``trusted_proxy_hops`` = N, the last N entries of the chain
    (``forwarded_for + [remote_addr]``) are trusted proxies and the entry
    just before them is the client. Forwarded headers are ignored entirely
    when no proxy hop is trusted.
    """
    if trusted_proxy_hops <= 0:
        return normalize_address(context.remote_addr)

    chain = list(context.forwarded_for)
    if context.remote_addr:
        chain.append(context.remote_addr)
    if not chain:
        return UNKNOWN_ADDRESS
    index = max(0, len(chain) - 1 - trusted_proxy_hops)
    return normalize_address(chain[index])


class IdentifierResolver:
    """Derive the rate-limit identifier for a request using one strategy."""

    def __init__(
        self,
        mode: IdentifierMode = IdentifierMode.IP,
        extractor: Optional[Callable[[RequestContext], Any]] = None,
        trusted_proxy_hops: int = 0,
    ) -> None:
        self.mode = IdentifierMode(mode)
        if self.mode is IdentifierMode.CUSTOM and extractor is None:
            raise ValueError("custom identifier mode requires an extractor")
        if trusted_proxy_hops < 0:
            raise ValueError("trusted_proxy_hops must not be negative")
        self.extractor = extractor
        self.trusted_proxy_hops = trusted_proxy_hops

    def resolve(self, context: RequestContext) -> str:
        """Return the identifier for ``context``.

        Raises:
            IdentifierResolutionError: caller-key mode without a resolved key, or
                a custom extractor that returned nothing
        """
        if self.mode is IdentifierMode.CALLER_KEY:
            if context.caller_key is None or not str(context.caller_key).strip():
                raise IdentifierResolutionError()
            return str(context.caller_key)

        if self.mode is IdentifierMode.CUSTOM:
            identifier = self.extractor(context)
            if identifier is None or not str(identifier).strip():
                raise IdentifierResolutionError("Custom extractor returned no identifier")
            return str(identifier)

        address = client_address(context, self.trusted_proxy_hops)
        if address == UNKNOWN_ADDRESS:
            logger.debug(f"No client address for {context.path}; using shared bucket")
        return address

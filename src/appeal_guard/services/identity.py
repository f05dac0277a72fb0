"""Client identity resolution behind an optional reverse proxy."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from appeal_guard.core.settings import Settings

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

CF_CONNECTING_IP = "cf-connecting-ip"
X_FORWARDED_FOR = "x-forwarded-for"
PROXY_HEADERS = (CF_CONNECTING_IP, X_FORWARDED_FOR)

UNKNOWN_ORIGIN = "unknown"


class SpoofedProxyHeaderError(Exception):
    """Raised when an untrusted peer asserts a client address via proxy headers."""

    def __init__(self, peer: str, headers: Iterable[str]) -> None:
        self.peer = peer
        self.headers = tuple(headers)
        super().__init__(f"untrusted peer {peer} sent {', '.join(self.headers)}")


@dataclass(frozen=True)
class ClientIdentity:
    """The resolved origin for one request."""

    origin: str
    peer: str
    via_proxy: bool = False


def _parse_ip(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


class ClientIdentityResolver:
    """Derive a trustworthy origin from the peer address and proxy headers.

    Proxy headers are honoured only when the immediate peer sits inside one of
    the configured trusted networks.
    """

    def __init__(
        self,
        trusted_cidrs: Iterable[str],
        *,
        trust_loopback: bool = True,
        strict: bool = True,
    ) -> None:
        self.networks: tuple[IPNetwork, ...] = tuple(
            ipaddress.ip_network(cidr.strip(), strict=False) for cidr in trusted_cidrs
        )
        self.trust_loopback = trust_loopback
        self.strict = strict

    @classmethod
    def from_settings(cls, config: Settings) -> ClientIdentityResolver:
        return cls(
            config.trusted_proxy_cidrs,
            trust_loopback=config.trust_loopback_proxy,
            strict=config.strict_proxy_validation,
        )

    def is_trusted_proxy(self, peer: str | None) -> bool:
        address = _parse_ip(peer) if peer else None
        if address is None:
            return False
        # Dual-stack sockets report IPv4 peers as ::ffff:a.b.c.d.
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if self.trust_loopback and address.is_loopback:
            return True
        return any(address in network for network in self.networks)

    @staticmethod
    def _forwarded_address(headers: Mapping[str, str]) -> str | None:
        connecting = (headers.get(CF_CONNECTING_IP) or "").strip()
        if connecting and _parse_ip(connecting) is not None:
            return connecting
        forwarded = headers.get(X_FORWARDED_FOR) or ""
        first = forwarded.split(",")[0].strip()
        if first and _parse_ip(first) is not None:
            return first
        return None

    def resolve(self, peer: str | None, headers: Mapping[str, str]) -> ClientIdentity:
        """Return the client identity for a request.

        Raises:
            SpoofedProxyHeaderError: An untrusted peer carried proxy headers and
                strict validation is enabled.
        """
        peer = peer or UNKNOWN_ORIGIN
        present = [name for name in PROXY_HEADERS if headers.get(name)]

        if self.is_trusted_proxy(peer):
            forwarded = self._forwarded_address(headers)
            if forwarded:
                return ClientIdentity(origin=forwarded, peer=peer, via_proxy=True)
            if present:
                logger.warning("Trusted proxy %s sent unparseable client address headers", peer)
            return ClientIdentity(origin=peer, peer=peer)

        if present:
            logger.warning(
                "IP spoofing attempt: untrusted peer %s sent %s",
                peer,
                ", ".join(present),
            )
            if self.strict:
                raise SpoofedProxyHeaderError(peer, present)
        return ClientIdentity(origin=peer, peer=peer)

"""Address validation and store key derivation."""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass

from .errors import ValidationError

_IPV4_BROADCAST = ipaddress.IPv4Address("255.255.255.255")


@dataclass(frozen=True)
class Address:
    """A validated source address."""

    ip: ipaddress.IPv4Address | ipaddress.IPv6Address

    @property
    def text(self) -> str:
        return str(self.ip)

    @property
    def version(self) -> int:
        return self.ip.version

    @property
    def key(self) -> str:
        """Return the store key for this address.

        IPv4 keys are the decimal form of the 32-bit integer so they line up
        with records produced by older releases. IPv6 keys use the exploded
        text form, which can never be confused with a decimal IPv4 key.
        """

        if self.ip.version == 4:
            return str(int(self.ip))
        return self.ip.exploded

    def __str__(self) -> str:
        return self.text


def parse_address(value: object) -> Address:
    """Validate ``value`` and return an :class:`Address`.

    IPv4-mapped IPv6 literals (``::ffff:a.b.c.d``) are folded into the IPv4
    address they carry, which is how tcpd hands over IPv4 peers on dual-stack
    listeners.
    """

    if not isinstance(value, str):
        raise ValidationError(f"address must be a string, not {type(value).__name__}")

    candidate = value.strip()
    if not candidate:
        raise ValidationError("address is empty")
    if "%" in candidate:
        raise ValidationError(f"scoped addresses are not accepted: {candidate!r}")

    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError as exc:
        raise ValidationError(f"invalid address {candidate!r}") from exc

    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if ip.version == 4:
        if int(ip) >> 24 == 0:
            raise ValidationError(f"invalid address {candidate!r}: first octet is zero")
        if ip == _IPV4_BROADCAST:
            raise ValidationError(f"invalid address {candidate!r}: broadcast")
    elif ip.is_unspecified:
        raise ValidationError(f"invalid address {candidate!r}: unspecified")

    if ip.is_multicast:
        raise ValidationError(f"invalid address {candidate!r}: multicast")

    return Address(ip=ip)


def is_valid_address(value: object) -> bool:
    try:
        parse_address(value)
    except ValidationError:
        return False
    return True


__all__ = ["Address", "is_valid_address", "parse_address"]

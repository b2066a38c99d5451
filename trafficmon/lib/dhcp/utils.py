import ipaddress
import re
from typing import List, Tuple

from trafficmon.lib.constants import DHCP_HOSTNAME_PLACEHOLDER
from .lease import DHCPLease

MAC_RE = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$")


def parse_dhcp_leases(lines: str) -> Tuple[List[DHCPLease], List[str]]:
    """
    Parse a dnsmasq lease file: "<expiry> <mac> <ip> <hostname> [<client-id>]" per line.
    The client id is not used.
    returns: leases: List[DHCPLease], rejected: lines that could not be parsed
    """

    leases: List[DHCPLease] = []
    rejected: List[str] = []

    for line in lines.splitlines():
        parts = line.split()
        if not parts:
            continue
        if len(parts) < 4:
            rejected.append(line)
            continue
        try:
            expiry = int(parts[0])
        except ValueError:
            rejected.append(line)
            continue

        hostname = parts[3] if parts[3] != DHCP_HOSTNAME_PLACEHOLDER else None

        leases.append(DHCPLease(
            expiry=expiry,
            mac=parts[1].lower(),
            ip=parts[2],
            hostname=hostname,
        ))

    return leases, rejected


def is_valid_mac(mac: str | None) -> bool:
    """Only the canonical lower-case aa:bb:cc:dd:ee:ff form is accepted."""
    return bool(mac) and MAC_RE.match(mac) is not None


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def leased_ipv4_addresses(leases: List[DHCPLease]) -> List[str]:
    """Unique, valid IPv4 addresses from the lease table, sorted numerically."""
    return sorted({l.ip for l in leases if is_ipv4(l.ip)}, key=ipaddress.IPv4Address)


def mac_id(mac: str) -> str:
    """aa:bb:cc:dd:ee:ff -> aa_bb_cc_dd_ee_ff, usable in file names, unique ids and topics."""
    return mac.replace(":", "_")

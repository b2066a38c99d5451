from dataclasses import dataclass

@dataclass
class DHCPLease:
    expiry: int
    mac: str
    ip: str
    hostname: str | None = None

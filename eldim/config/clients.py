"""Client Roster - who may upload to eldim

Self-Explanatory: Parse, validate and index the clients YAML file.
Why: A request is matched to a client by password or by source IP, so names,
passwords and IP addresses must each be unique across the roster; otherwise a
request could map to two clients.

File format (a YAML list):

    - name: web01.example.com
      ipv4: [192.0.2.10]
      ipv6: ["2001:db8::10"]
    - name: db01.example.com
      password: <32-128 characters>
"""

import hashlib
import ipaddress
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, field_validator
from pydantic import ValidationError as SchemaError

from eldim.errors import ValidationError

logger = structlog.get_logger()

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

PASSWORD_MIN_LENGTH = 32
PASSWORD_MAX_LENGTH = 128


class ClientConfig(BaseModel):
    """One entry of the clients file"""

    name: str = ""
    ipv4: List[str] = []
    ipv6: List[str] = []
    password: str = ""

    @field_validator("ipv4", "ipv6", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v

    @field_validator("name", "password", mode="before")
    @classmethod
    def _none_is_blank(cls, v):
        return "" if v is None else v

    def display_name(self) -> str:
        return self.name or "Unnamed Client"

    def ipv4_addresses(self) -> List[IPAddress]:
        return [ipaddress.ip_address(ip.strip()) for ip in self.ipv4]

    def ipv6_addresses(self) -> List[IPAddress]:
        return [ipaddress.ip_address(ip.strip()) for ip in self.ipv6]

    def check(self):
        """Validate this entry on its own; raises ValidationError on the first problem"""
        if not self.name:
            raise ValidationError("Client has no name")

        for ip in self.ipv4 + self.ipv6:
            try:
                ipaddress.ip_address(ip.strip())
            except ValueError:
                raise ValidationError(f"Client contains an invalid IP Address: {ip}")

        for addr in self.ipv4_addresses():
            if addr.version != 4:
                raise ValidationError(f"Client contains a non-IPv4 in IPv4 list: {addr}")
        for addr in self.ipv6_addresses():
            if addr.version != 6 or addr.ipv4_mapped is not None:
                raise ValidationError(f"Client contains a non-IPv6 in IPv6 list: {addr}")

        if not self.password and not self.ipv4 and not self.ipv6:
            raise ValidationError("Client does not have at least one of (password, IPv6, IPv4)")

        if self.password and len(self.password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                "Client has a password shorter than 32 characters: 32-128 are acceptable"
            )
        if len(self.password) > PASSWORD_MAX_LENGTH:
            raise ValidationError(
                "Client has a password longer than 128 characters: 32-128 are acceptable"
            )


def load_client_roster(path: str) -> List[ClientConfig]:
    """Read and parse the clients file (no semantic validation)"""
    if not path:
        raise ValidationError("Did not supply a clients config file")
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ValidationError(f"Failed to open clients file: {e}")
    except yaml.YAMLError as e:
        raise ValidationError(f"Unable to decode client file YAML: {e}")

    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("Unable to decode client file YAML: expected a list of clients")

    clients = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"Client {i + 1} is not a mapping")
        try:
            clients.append(ClientConfig(**entry))
        except SchemaError as e:
            raise ValidationError(f"Client {i + 1} could not be parsed: {e.errors()[0]['msg']}")
    return clients


def validate_roster(clients: List[ClientConfig]):
    """Per-entry checks, then cross-entry uniqueness of names, passwords and IPs"""
    if len(clients) == 0:
        raise ValidationError("No clients have been supplied. eldim will not work")

    for i, c in enumerate(clients):
        try:
            c.check()
        except ValidationError as e:
            raise ValidationError(f"Client '{c.display_name()}' ({i + 1}) is invalid: {e.message}")

    names = set()
    passwords = set()
    ips = set()
    for i, c in enumerate(clients):
        if c.name in names:
            raise ValidationError(f"Client {i + 1} does not have a unique name: {c.name}")
        names.add(c.name)

        if c.password:
            if c.password in passwords:
                raise ValidationError(f"Client {i + 1} does not have a unique password: {c.name}")
            passwords.add(c.password)

        for addr in c.ipv6_addresses() + c.ipv4_addresses():
            if addr in ips:
                raise ValidationError(
                    f"Client '{c.name}' ({i + 1}) reuses an IP Address: {addr}"
                )
            ips.add(addr)


@dataclass(frozen=True)
class Client:
    """An authenticated caller, resolved per request"""

    name: str


def _digest(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


class ClientRegistry:
    """Lookup tables built once from a validated roster

    Passwords are indexed by SHA-256 digest so the raw secrets are not kept
    around and lookups do not compare secrets character by character.
    """

    def __init__(self, clients: List[ClientConfig]):
        validate_roster(clients)
        self._by_password: Dict[bytes, Client] = {}
        self._by_ip: Dict[IPAddress, Client] = {}
        self._clients: List[Client] = []

        for c in clients:
            client = Client(name=c.name)
            self._clients.append(client)
            if c.password:
                self._by_password[_digest(c.password)] = client
            for addr in c.ipv4_addresses() + c.ipv6_addresses():
                self._by_ip[addr] = client

        logger.info("Client registry built", clients=len(self._clients), addresses=len(self._by_ip))

    def by_password(self, secret: Optional[str]) -> Optional[Client]:
        if not secret:
            return None
        return self._by_password.get(_digest(secret))

    def by_ip(self, source_ip: Optional[str]) -> Optional[Client]:
        if not source_ip:
            return None
        try:
            addr = ipaddress.ip_address(source_ip)
        except ValueError:
            return None
        if addr.version == 6 and addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        return self._by_ip.get(addr)

    def match(self, source_ip: Optional[str], secret: Optional[str]) -> Optional[Client]:
        """Resolve a caller; a matching password wins over a matching IP"""
        by_password = self.by_password(secret)
        by_ip = self.by_ip(source_ip)
        if by_password and by_ip and by_password != by_ip:
            logger.warning(
                "Password and source IP belong to different clients",
                password_client=by_password.name,
                ip_client=by_ip.name,
            )
        return by_password or by_ip

    def names(self) -> List[str]:
        return [c.name for c in self._clients]

    def __len__(self) -> int:
        return len(self._clients)

"""Service records exchanged between the platform, the resolve queue and callers."""

from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_DOMAIN = "local."


def normalize_service_type(service_type: str) -> str:
    """Reduce a service type to its bare form, e.g. "_http._tcp".

    Some platforms report the type as "._http._tcp", others fully qualified
    as "_http._tcp.local.". Both normalise to the same value.
    """
    service_type = service_type.strip()
    if service_type.startswith("."):
        service_type = service_type[1:]
    service_type = service_type.rstrip(".")
    suffix = "." + DEFAULT_DOMAIN.rstrip(".")
    if service_type.endswith(suffix):
        service_type = service_type[: -len(suffix)]
    return service_type


def qualify_service_type(service_type: str) -> str:
    """Return the fully qualified form of a type, e.g. "_http._tcp.local."."""
    return f"{normalize_service_type(service_type)}.{DEFAULT_DOMAIN}"


@dataclass(frozen=True)
class ServiceRef:
    """A found-but-unresolved service instance."""

    name: str
    service_type: str

    def __str__(self) -> str:
        return f"{self.name}.{self.service_type}"


@dataclass
class PlatformServiceInfo:
    """Raw resolve answer as handed back by a platform."""

    name: str
    service_type: str
    hostname: str
    address: str
    port: int
    attributes: Mapping[Any, Any] = field(default_factory=dict)


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


@dataclass(frozen=True)
class ResolvedService:
    """A fully resolved service: where to connect and its TXT metadata."""

    name: str
    service_type: str
    hostname: str
    address: str
    port: int
    txt: dict[bytes, bytes] = field(default_factory=dict, hash=False)

    @classmethod
    def from_platform(cls, info: PlatformServiceInfo) -> "ResolvedService":
        """Build a ResolvedService from a platform resolve answer.

        TXT keys are encoded to UTF-8 and keys without a value map to b"".
        """
        txt = {_to_bytes(key): _to_bytes(value) for key, value in info.attributes.items()}
        return cls(
            name=info.name,
            service_type=normalize_service_type(info.service_type),
            hostname=info.hostname,
            address=info.address,
            port=info.port,
            txt=txt,
        )

    def txt_string(self, key: str, default: str | None = None) -> str | None:
        """Decode a TXT value as UTF-8, or return default if the key is absent."""
        value = self.txt.get(key.encode("utf-8"))
        if value is None:
            return default
        return value.decode("utf-8", errors="replace")

    def __str__(self) -> str:
        return f"{self.name} @ {self.hostname} ({self.address}:{self.port})"


@dataclass(frozen=True)
class RegisteredService:
    """What the platform actually registered (the name may have been changed)."""

    name: str
    service_type: str


@dataclass
class BrowseState:
    """Lifecycle of one browse operation."""

    service_type: str
    running: bool = False
    last_error: int | None = None


@dataclass
class RegistrationState:
    """Lifecycle of one registration."""

    requested_name: str
    effective_name: str
    service_type: str
    port: int
    running: bool = False
    last_error: int | None = None

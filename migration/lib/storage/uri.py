"""Blob storage location strings.

An external data source LOCATION has the form
``scheme://container@account.host/path``. The path of an external table
is resolved relative to it, so both must be well formed and agree.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from migration.lib.errors import ConfigurationError

__all__ = ["CLOUD_SCHEMES", "StorageLocation", "is_cloud_location", "parse_location"]

CLOUD_SCHEMES = ("wasbs", "wasb", "abfss", "abfs")

_LOCATION_PATTERN = re.compile(
    r"^(?P<scheme>[a-z]+)://(?P<container>[^@/]*)@(?P<host>[^/]*)(?P<path>/.*)?$"
)
_CONTAINER_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){2,62}$")


@dataclass(frozen=True)
class StorageLocation:
    """A parsed ``scheme://container@account/path`` location."""

    scheme: str
    container: str
    host: str
    path: str = ""

    @property
    def account(self) -> str:
        """Storage account name (first label of the host)."""
        return self.host.split(".")[0]

    @property
    def root(self) -> str:
        """Location without a path, as used by CREATE EXTERNAL DATA SOURCE."""
        return f"{self.scheme}://{self.container}@{self.host}"

    def join(self, path: str) -> str:
        """Full URI for a path relative to this location."""
        base = f"{self.root}{self.path}".rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    def __str__(self) -> str:
        return f"{self.root}{self.path}"


def is_cloud_location(uri: str) -> bool:
    """True if the string uses one of the blob storage schemes."""
    return any(uri.startswith(f"{scheme}://") for scheme in CLOUD_SCHEMES)


def parse_location(uri: str) -> StorageLocation:
    """Parse and validate a blob storage location.

    Raises:
        ConfigurationError: If the location is malformed

    Example:
        >>> loc = parse_location("wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/")
        >>> loc.container, loc.account
        ('contosoretaildw', 'contosoretaildw')
    """
    match = _LOCATION_PATTERN.match(uri or "")
    if not match:
        raise ConfigurationError(
            f"Malformed storage location: {uri!r}",
            field="location",
            value=uri,
            suggestion="Use scheme://container@account.blob.core.windows.net/path",
        )

    scheme = match.group("scheme")
    if scheme not in CLOUD_SCHEMES:
        raise ConfigurationError(
            f"Unsupported storage scheme: {scheme}",
            field="location",
            value=uri,
            suggestion=f"Use one of: {', '.join(CLOUD_SCHEMES)}",
        )

    container = match.group("container")
    if not _CONTAINER_PATTERN.match(container):
        raise ConfigurationError(
            f"Invalid container name: {container!r}",
            field="location",
            value=uri,
            suggestion="Container names are 3-63 lowercase letters, digits or single hyphens.",
        )

    host = match.group("host")
    if not host or "." not in host and not host.isalnum():
        raise ConfigurationError(f"Invalid storage account host: {host!r}", field="location", value=uri)

    path = (match.group("path") or "").rstrip("/")
    return StorageLocation(scheme=scheme, container=container, host=host, path=path)

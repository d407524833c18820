from __future__ import annotations

from collections import namedtuple
from typing import Dict
from urllib.parse import parse_qs, urlparse

from graphsession.exception import ConfigurationError

DEFAULT_PORT = 7687

SchemeMapping = namedtuple("SchemeMapping", ("routing", "encrypted", "trust"))


SCHEME_MAPPING = {
    "bolt": SchemeMapping(False, False, None),
    "bolt+s": SchemeMapping(False, True, "system"),
    "bolt+ssc": SchemeMapping(False, True, "all"),
    "neo4j": SchemeMapping(True, False, None),
    "neo4j+s": SchemeMapping(True, True, "system"),
    "neo4j+ssc": SchemeMapping(True, True, "all"),
}


class ServerAddress(
    namedtuple(
        "ServerAddress",
        (
            "scheme",
            "host",
            "port",
            "routing",
            "encrypted",
            "trust",
            "routing_context",
        ),
    )
):
    """A parsed connection URL. Never holds credentials."""

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.key}"

    @property
    def key(self) -> str:
        # IPv6 literals keep their brackets
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    def __str__(self) -> str:
        return self.url


def parse_url(url: str) -> ServerAddress:
    """Parse ``scheme://host[:port][?routing_context]``

    Args:
        url (str): Connection string. The scheme selects plain, encrypted
            or cluster-routing connections.

    Raises:
        ConfigurationError: If the URL is malformed or the scheme unknown

    Returns:
        ServerAddress: The parsed address
    """
    if not isinstance(url, str) or not url:
        raise ConfigurationError("url: must be a non-empty string")

    parts = urlparse(url)
    scheme = parts.scheme.lower()
    if scheme not in SCHEME_MAPPING:
        raise ConfigurationError(
            f"Unsupported URL scheme {parts.scheme!r}. Expected one of: "
            f"{', '.join(SCHEME_MAPPING)}"
        )
    if parts.username or parts.password:
        raise ConfigurationError(
            "Credentials must be passed as an auth token, not in the URL"
        )
    if parts.path not in ("", "/"):
        raise ConfigurationError(
            f"URL must not contain a path, got {parts.path!r}"
        )

    try:
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(
            "port: must be an integer between 0 and 65535"
        ) from e

    host = parts.hostname or "localhost"
    mapping = SCHEME_MAPPING[scheme]

    routing_context: Dict[str, str] = {}
    if parts.query:
        if not mapping.routing:
            raise ConfigurationError(
                f"Routing context is not supported by the {scheme} scheme"
            )
        for key, values in parse_qs(parts.query).items():
            if len(values) != 1:
                raise ConfigurationError(
                    f"Duplicated routing context key {key!r}"
                )
            routing_context[key] = values[0]

    return ServerAddress(
        scheme=scheme,
        host=host,
        port=DEFAULT_PORT if port is None else port,
        routing=mapping.routing,
        encrypted=mapping.encrypted,
        trust=mapping.trust,
        routing_context=routing_context,
    )

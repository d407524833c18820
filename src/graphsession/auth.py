from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from graphsession.exception import ConfigurationError


@dataclass(frozen=True)
class AuthToken:
    """Credentials presented during the connection handshake.

    The credentials are excluded from ``repr`` so tokens can be logged.
    """

    scheme: str
    principal: Optional[str] = None
    credentials: Optional[str] = field(default=None, repr=False)
    realm: Optional[str] = None
    parameters: Mapping[str, Any] = field(
        default_factory=dict, repr=False, hash=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "parameters", MappingProxyType(dict(self.parameters or {}))
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"scheme": self.scheme}
        if self.principal is not None:
            data["principal"] = self.principal
        if self.credentials is not None:
            data["credentials"] = self.credentials
        if self.realm is not None:
            data["realm"] = self.realm
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data


def basic(
    username: str, password: str, realm: Optional[str] = None
) -> AuthToken:
    """Username/password authentication"""
    if not isinstance(username, str) or not username:
        raise ConfigurationError(
            "username: must be a string at least 1 character long"
        )
    if not isinstance(password, str):
        raise ConfigurationError("password: must be a string")
    return AuthToken("basic", username, password, realm)


def kerberos(base64_ticket: str) -> AuthToken:
    """Kerberos authentication with a base64 encoded ticket"""
    if not base64_ticket:
        raise ConfigurationError("kerberos: ticket must not be empty")
    return AuthToken("kerberos", "", base64_ticket)


def bearer(base64_token: str) -> AuthToken:
    """Bearer authentication with a base64 encoded token (SSO)"""
    if not base64_token:
        raise ConfigurationError("bearer: token must not be empty")
    return AuthToken("bearer", None, base64_token)


def custom(
    principal: str,
    credentials: str,
    realm: Optional[str],
    scheme: str,
    **parameters: Any,
) -> AuthToken:
    """Authentication against a custom server-side auth provider"""
    if not scheme:
        raise ConfigurationError("custom: scheme must not be empty")
    return AuthToken(scheme, principal, credentials, realm, dict(parameters))

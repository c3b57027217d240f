from .identity import (
    Identity,
    create_access_token,
    decode_identity,
    get_current_identity,
    resolve_websocket_identity,
    ALGORITHM,
    JWT_ISSUER,
)

__all__ = [
    "Identity",
    "create_access_token",
    "decode_identity",
    "get_current_identity",
    "resolve_websocket_identity",
    "ALGORITHM",
    "JWT_ISSUER",
]

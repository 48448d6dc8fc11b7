"""Key authorization construction (RFC 8555 Section 8.1)."""

import hashlib

from dnsproof.crypto import PrivateKey, PublicKey, base64url_encode, key_thumbprint
from dnsproof.exceptions import KeyMaterialError

DNS01_LABEL = "_acme-challenge"


def build_key_authorization(token: str, public_key: PublicKey | PrivateKey) -> str:
    """Bind a challenge token to the account key.

    The key authorization is ``token + "." + thumbprint`` where the
    thumbprint is the RFC 7638 JWK thumbprint of the account public key.
    The authority recomputes the same value on its side, so this must be
    byte-for-byte deterministic.

    Args:
        token: The challenge token issued by the authority.
        public_key: The account public key (a private key is accepted and
            its public half used).

    Raises:
        KeyMaterialError: If the token is empty or the key is unsupported.
    """
    if not token:
        raise KeyMaterialError("challenge token is empty")
    return f"{token}.{key_thumbprint(public_key)}"


def dns01_txt_value(key_authorization: str) -> str:
    """Compute the TXT record value for a DNS-01 challenge.

    Returns:
        base64url(SHA-256(key_authorization)) without padding (43 chars).
    """
    return base64url_encode(hashlib.sha256(key_authorization.encode("utf-8")).digest())


def dns01_record_name(domain: str) -> str:
    """Name of the TXT record validated for ``domain``.

    Wildcard authorizations are validated at the base domain.
    """
    name = domain.rstrip(".")
    if name.startswith("*."):
        name = name[2:]
    return f"{DNS01_LABEL}.{name}"

"""Account key material and JWS signing for ACME requests."""

import base64
import hashlib
import json
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from dnsproof.exceptions import KeyMaterialError

# Type aliases for supported keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey
PublicKey = rsa.RSAPublicKey | ec.EllipticCurvePublicKey

# curve name -> (JWK crv, coordinate size in bytes, JWS alg, hash)
_CURVES: dict[str, tuple[str, int, str, hashes.HashAlgorithm]] = {
    "secp256r1": ("P-256", 32, "ES256", hashes.SHA256()),
    "secp384r1": ("P-384", 48, "ES384", hashes.SHA384()),
}


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256" or "P-384").

    Raises:
        KeyMaterialError: If the curve is not supported.
    """
    curves = {"P-256": ec.SECP256R1(), "P-384": ec.SECP384R1()}
    if curve not in curves:
        raise KeyMaterialError(f"Unsupported curve: {curve}. Supported: {list(curves)}")
    return ec.generate_private_key(curves[curve])


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def load_private_key_pem(pem_data: str) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Raises:
        KeyMaterialError: If the PEM data is invalid, encrypted, or not an
            RSA/ECDSA key.
    """
    try:
        key = serialization.load_pem_private_key(pem_data.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise KeyMaterialError(f"Invalid PEM data: {e}") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise KeyMaterialError(f"Unsupported key type: {type(key).__name__}")
    return key


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _int_to_base64url(n: int, length: int | None = None) -> str:
    if length is None:
        length = max(1, (n.bit_length() + 7) // 8)
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def _public(key: Any) -> PublicKey:
    """Return the public half of ``key``, rejecting unsupported key types."""
    if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        return key.public_key()
    if isinstance(key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        return key
    raise KeyMaterialError(f"Unsupported key type: {type(key).__name__}")


def get_jwk(key: PrivateKey | PublicKey) -> dict[str, str]:
    """Get the public JWK (RFC 7517) of an RSA or EC key.

    Raises:
        KeyMaterialError: If the key type or curve is unsupported.
    """
    public_key = _public(key)
    if isinstance(public_key, rsa.RSAPublicKey):
        numbers = public_key.public_numbers()
        return {
            "kty": "RSA",
            "n": _int_to_base64url(numbers.n),
            "e": _int_to_base64url(numbers.e),
        }

    curve_name = public_key.curve.name
    if curve_name not in _CURVES:
        raise KeyMaterialError(f"Unsupported curve: {curve_name}")
    crv, size, _, _ = _CURVES[curve_name]
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": crv,
        "x": _int_to_base64url(numbers.x, size),
        "y": _int_to_base64url(numbers.y, size),
    }


def key_thumbprint(key: PrivateKey | PublicKey) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    Only the required members take part, serialized with sorted member
    names and no whitespace, then hashed with SHA-256.

    Returns:
        Base64url-encoded SHA-256 thumbprint without padding.
    """
    jwk = get_jwk(key)
    if jwk["kty"] == "RSA":
        required = ("e", "kty", "n")
    else:
        required = ("crv", "kty", "x", "y")
    canonical = json.dumps(
        {name: jwk[name] for name in required},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return base64url_encode(hashlib.sha256(canonical).digest())


def jws_algorithm(key: PrivateKey) -> str:
    """JWS ``alg`` for a signing key (RS256, ES256 or ES384)."""
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    if isinstance(key, ec.EllipticCurvePrivateKey) and key.curve.name in _CURVES:
        return _CURVES[key.curve.name][2]
    raise KeyMaterialError(f"Cannot sign with key type: {type(key).__name__}")


def sign_jws(
    key: PrivateKey,
    payload: dict[str, Any] | str,
    url: str,
    nonce: str,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a flattened JSON JWS for ACME (RFC 8555 Section 6.2).

    Args:
        key: Account private key.
        payload: Payload to sign (dict for JSON, "" for POST-as-GET).
        url: URL of the ACME endpoint.
        nonce: Replay nonce.
        kid: Account URL. When None the public JWK is embedded instead.

    Returns:
        Dict with ``protected``, ``payload`` and ``signature`` members.
    """
    protected: dict[str, Any] = {"alg": jws_algorithm(key), "nonce": nonce, "url": url}
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)

    protected_b64 = base64url_encode(json.dumps(protected, separators=(",", ":")).encode())
    if payload == "":
        payload_b64 = ""
    else:
        payload_b64 = base64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")

    if isinstance(key, rsa.RSAPrivateKey):
        signature = key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())
    else:
        _, size, _, digest = _CURVES[key.curve.name]
        r, s = decode_dss_signature(key.sign(signing_input, ec.ECDSA(digest)))
        signature = r.to_bytes(size, byteorder="big") + s.to_bytes(size, byteorder="big")

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }

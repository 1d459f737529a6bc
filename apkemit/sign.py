from __future__ import annotations

"""RSA signatures over precomputed SHA-1 digests, backed by PyCryptodomex.

APK signatures are PKCS#1 v1.5 over the SHA-1 digest of the compressed
control member. The digest is accumulated while that member is written, so
signing here starts from the finished digest bytes rather than from data.
"""

from typing import Optional

try:  # pragma: no cover - optional dependency at runtime
    from Cryptodome.PublicKey import RSA  # type: ignore
    from Cryptodome.Signature import pkcs1_15  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - reported when signing is requested
    RSA = None  # type: ignore
    pkcs1_15 = None  # type: ignore
    _HAS_CRYPTODOME = False

from .errors import SigningError


SHA1_OID = "1.3.14.3.2.26"
SHA1_DIGEST_SIZE = 20


class PrehashedSHA1:
    """Hash-object stand-in carrying a finished SHA-1 digest.

    ``pkcs1_15`` only needs ``oid`` and ``digest()`` to build the DigestInfo.
    """

    oid = SHA1_OID
    digest_size = SHA1_DIGEST_SIZE

    def __init__(self, digest: bytes):
        if len(digest) != SHA1_DIGEST_SIZE:
            raise SigningError(f"expected a {SHA1_DIGEST_SIZE}-byte SHA-1 digest, got {len(digest)} bytes")
        self._digest = bytes(digest)

    def digest(self) -> bytes:
        return self._digest

    def hexdigest(self) -> str:
        return self._digest.hex()


def _ensure_backend() -> None:
    if not _HAS_CRYPTODOME:
        raise SigningError("PyCryptodomex is required for package signing")


def _read_key_file(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise SigningError(f"unable to read key {path}: {exc}") from exc


def load_signing_key(path: str, passphrase: Optional[str] = None):
    """Load a PEM RSA private key, decrypting it with ``passphrase`` if given."""
    _ensure_backend()
    data = _read_key_file(path)
    try:
        key = RSA.import_key(data, passphrase=passphrase or None)
    except (ValueError, IndexError, TypeError) as exc:
        raise SigningError(f"unable to load signing key {path}: {exc}") from exc
    if not key.has_private():
        raise SigningError(f"{path} does not contain an RSA private key")
    return key


def load_public_key(path: str):
    _ensure_backend()
    data = _read_key_file(path)
    try:
        return RSA.import_key(data)
    except (ValueError, IndexError, TypeError) as exc:
        raise SigningError(f"unable to load public key {path}: {exc}") from exc


def rsa_sign_sha1_digest(digest: bytes, key_path: str, passphrase: Optional[str] = None) -> bytes:
    """Sign an already computed SHA-1 ``digest`` with the RSA key at ``key_path``."""
    h = PrehashedSHA1(digest)
    key = load_signing_key(key_path, passphrase)
    try:
        return pkcs1_15.new(key).sign(h)
    except (ValueError, TypeError) as exc:
        raise SigningError(f"unable to sign digest: {exc}") from exc


def rsa_verify_sha1_digest(digest: bytes, signature: bytes, public_key_path: str) -> bool:
    h = PrehashedSHA1(digest)
    key = load_public_key(public_key_path)
    try:
        pkcs1_15.new(key).verify(h, signature)
    except (ValueError, TypeError):
        return False
    return True

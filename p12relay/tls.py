"""
p12relay.tls
~~~~~~~~~~~~
Turns a passphrase-protected PKCS#12 bundle into the client identity the
proxy presents to origins, and builds the outbound ``ssl.SSLContext``.

Only the leaf certificate and its key are taken from the bundle.  Trust
for origin certificates comes exclusively from the separate PEM CA file;
CA certificates embedded in the PKCS#12 are ignored.
"""

from __future__ import annotations

import logging
import secrets
import ssl
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import Config

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Startup-fatal problem with the client identity or trust store."""


class IdentityFileError(IdentityError):
    pass


class DecryptionError(IdentityError):
    pass


class CredentialError(IdentityError):
    pass


class TrustStoreError(IdentityError):
    pass


@dataclass(frozen=True)
class TLSIdentity:
    cert_pem: Optional[bytes] = None
    key_pem: Optional[bytes] = None
    ca_pem: Optional[bytes] = None
    insecure: bool = False

    @property
    def mutual(self) -> bool:
        return self.cert_pem is not None


def _public_der(key) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_identity(path: str | Path, passphrase: str) -> TLSIdentity:
    """Decrypt the PKCS#12 at *path* and return its certificate/key pair."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise IdentityFileError(f"cannot read {path}: {e.strerror or e}") from e

    password = passphrase.encode("utf-8") if passphrase else None
    try:
        key, cert, _extra_cas = pkcs12.load_key_and_certificates(data, password)
    except (ValueError, TypeError) as e:
        raise DecryptionError(
            f"cannot decrypt {path}: wrong passphrase or malformed PKCS#12"
        ) from e

    if key is None:
        raise CredentialError(f"{path} contains no private key")
    if cert is None:
        raise CredentialError(f"{path} contains no certificate")
    if _public_der(cert.public_key()) != _public_der(key.public_key()):
        raise CredentialError(f"private key in {path} does not match its certificate")

    identity = TLSIdentity(
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )
    # Fail here rather than on the first handshake.
    _load_chain(ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT), identity)
    return identity


def load_trust_store(path: str | Path) -> bytes:
    """Read a PEM CA bundle, requiring at least one parseable certificate."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise TrustStoreError(f"cannot read CA certificate {path}: {e.strerror or e}") from e

    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise TrustStoreError(f"no valid PEM certificate in {path}") from e
    if not certs:
        raise TrustStoreError(f"no valid PEM certificate in {path}")

    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


def _load_chain(ctx: ssl.SSLContext, identity: TLSIdentity) -> None:
    # ssl only loads key material from files.  The key is written encrypted
    # with a one-time password inside a private temp dir.
    key = serialization.load_pem_private_key(identity.key_pem, password=None)
    secret = secrets.token_urlsafe(32).encode("ascii")

    with tempfile.TemporaryDirectory(prefix="p12relay-") as tmp:
        cert_file = Path(tmp) / "client.pem"
        key_file = Path(tmp) / "client.key"
        cert_file.write_bytes(identity.cert_pem)
        key_file.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.BestAvailableEncryption(secret),
            )
        )
        try:
            ctx.load_cert_chain(str(cert_file), str(key_file), password=secret)
        except ssl.SSLError as e:
            raise CredentialError(f"certificate and key do not form a usable pair: {e}") from e


def build_ssl_context(identity: TLSIdentity) -> ssl.SSLContext:
    """Client context for origin connections.

    A CA bundle replaces the system roots instead of extending them.
    """
    if identity.ca_pem is not None:
        ctx = ssl.create_default_context(cadata=identity.ca_pem.decode("ascii"))
    else:
        ctx = ssl.create_default_context()

    if identity.mutual:
        _load_chain(ctx, identity)

    if identity.insecure:
        logger.warning(
            "TLS verification of origin certificates is DISABLED (--insecure)"
        )
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    return ctx


def client_context(cfg: Config, passphrase: Optional[str]) -> ssl.SSLContext:
    """Everything the CLI needs: identity, optional CA file, insecure toggle."""
    if cfg.no_mtls:
        identity = TLSIdentity()
    else:
        identity = load_identity(cfg.cert_path, passphrase or "")
        logger.debug(f"Loaded client identity from {cfg.cert_path}")

    if cfg.cacert_path:
        identity = replace(identity, ca_pem=load_trust_store(cfg.cacert_path))
    if cfg.insecure:
        identity = replace(identity, insecure=True)

    return build_ssl_context(identity)

"""
Shared fixtures: throwaway certificates/PKCS#12 bundles and fakes for both
sides of the relay.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import io
import logging

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from p12relay.engine import ForwardingEngine
from p12relay.logger import AccessLog
from p12relay.upstream import UpstreamResponse

PASSPHRASE = "correct horse"


# ── certificates ─────────────────────────────────────────────────────────────


def new_key():
    return ec.generate_private_key(ec.SECP256R1())


def make_cert(common_name, key, issuer_key=None, issuer_name=None, ca=False):
    now = datetime.now(timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key or key, hashes.SHA256())
    )


def write_p12(path, key, cert, cas=None, passphrase=PASSPHRASE):
    enc = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase
        else serialization.NoEncryption()
    )
    path.write_bytes(pkcs12.serialize_key_and_certificates(b"client", key, cert, cas, enc))
    return path


@pytest.fixture
def ca():
    key = new_key()
    return key, make_cert("Test CA", key, ca=True)


@pytest.fixture
def client_pair(ca):
    ca_key, ca_cert = ca
    key = new_key()
    cert = make_cert("client", key, issuer_key=ca_key, issuer_name=ca_cert.subject)
    return key, cert


@pytest.fixture
def p12_path(tmp_path, client_pair):
    key, cert = client_pair
    return write_p12(tmp_path / "client.p12", key, cert)


@pytest.fixture
def ca_pem_path(tmp_path, ca):
    _, ca_cert = ca
    path = tmp_path / "ca.pem"
    path.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    return path


# ── relay fakes ──────────────────────────────────────────────────────────────


async def iter_chunks(chunks):
    for chunk in chunks:
        yield chunk


class RecordingResponder:
    def __init__(self):
        self.started = False
        self.finished = False
        self.status = None
        self.reason = None
        self.headers = []
        self.chunks = []

    async def start(self, status, reason, headers):
        self.started = True
        self.status = status
        self.reason = reason
        self.headers = list(headers)

    async def write(self, chunk):
        self.chunks.append(chunk)

    async def finish(self):
        self.finished = True

    @property
    def body(self):
        return b"".join(self.chunks)


class FakeUpstream:
    """Records outbound requests and answers with a canned response."""

    def __init__(self, status=200, reason="OK", headers=None, chunks=(b"",), error=None):
        self.status = status
        self.reason = reason
        self.headers = headers or []
        self.chunks = list(chunks)
        self.error = error
        self.requests = []
        self.bodies = []
        self.closed = 0

    @asynccontextmanager
    async def open(self, request):
        self.requests.append(request)
        if request.body is not None:
            self.bodies.append(b"".join([c async for c in request.body]))
        if self.error is not None:
            raise self.error
        try:
            yield UpstreamResponse(self.status, self.reason, list(self.headers), iter_chunks(self.chunks))
        finally:
            self.closed += 1


class NeverCalledUpstream:
    def open(self, request):
        raise AssertionError(f"unexpected outbound call to {request.url}")


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def access(log_stream):
    log = logging.getLogger("p12relay.tests")
    log.setLevel(logging.DEBUG)
    log.propagate = False
    for h in list(log.handlers):
        log.removeHandler(h)
    h = logging.StreamHandler(log_stream)
    h.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    log.addHandler(h)
    return AccessLog(log)


@pytest.fixture
def make_engine(access):
    def _make(upstream, scheme="https", debug=False):
        return ForwardingEngine(upstream, access, scheme=scheme, debug=debug)

    return _make

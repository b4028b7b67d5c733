"""
Tests for the TLS probe against an in-process TLS server
"""

import asyncio
import ssl
from unittest.mock import Mock

import pytest
from aiohttp.test_utils import unused_port
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat

from websec_audit.scanner.errors import ErrorCategory, NetworkError
from websec_audit.scanner.probes import tls_probe
from websec_audit.scanner.probes.tls_probe import TLSProbe, build_context, trusted_subjects
from helpers import build_certificate


@pytest.fixture(scope='module')
def server_identity(tmp_path_factory):
    """Self-signed certificate for 127.0.0.1: (cert path, key path, DER, PEM)."""
    key = ec.generate_private_key(ec.SECP256R1())
    cert = build_certificate('localhost', key=key, ip_addresses=['127.0.0.1'])

    directory = tmp_path_factory.mktemp('tls')
    cert_pem = cert.public_bytes(Encoding.PEM)
    cert_path = directory / 'server.pem'
    key_path = directory / 'server.key'
    cert_path.write_bytes(cert_pem)
    key_path.write_bytes(key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()))
    return cert_path, key_path, cert.public_bytes(Encoding.DER), cert_pem.decode()


def handshake_with_server(server_identity, probe=None):
    """Serve TLS on a free local port and run one probe handshake against it."""
    cert_path, key_path, _, _ = server_identity
    probe = probe or TLSProbe(timeout=5)

    async def handle(reader, writer):
        try:
            await reader.read()
        finally:
            writer.close()

    async def main():
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(cert_path, key_path)
        server = await asyncio.start_server(handle, '127.0.0.1', 0, ssl=context)
        port = server.sockets[0].getsockname()[1]
        try:
            return await probe.handshake('127.0.0.1', port)
        finally:
            server.close()
            await server.wait_closed()

    return asyncio.run(main())


class TestHandshake:

    def test_untrusted_certificate_falls_back_to_unverified(self, server_identity):
        _, _, der, _ = server_identity
        session = handshake_with_server(server_identity)

        assert session.authorized is False
        assert session.authorization_error
        assert session.certificates[0] == der
        assert session.protocol.startswith('TLS')
        assert session.cipher is not None

    def test_trusted_certificate_is_authorized(self, server_identity, monkeypatch):
        _, _, der, pem = server_identity
        original = tls_probe.build_context

        def trusting_context(verify):
            context = original(verify)
            if verify:
                context.verify_flags &= ~ssl.VERIFY_X509_STRICT
                context.load_verify_locations(cadata=pem)
            return context

        monkeypatch.setattr(tls_probe, 'build_context', trusting_context)
        session = handshake_with_server(server_identity)

        assert session.authorized is True
        assert session.authorization_error is None
        assert session.certificates[0] == der

    def test_refused_connection_raises(self):
        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(TLSProbe(timeout=2).handshake('127.0.0.1', unused_port()))

        assert exc_info.value.category == ErrorCategory.CONNECTION_REFUSED
        assert exc_info.value.classified.url.startswith('https://127.0.0.1:')


class TestBuildContext:

    def test_verifying(self):
        context = build_context(verify=True)

        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True

    def test_unverified(self):
        context = build_context(verify=False)

        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False


class TestReadChain:

    def test_unverified_chain_when_runtime_has_it(self):
        ssl_obj = Mock(spec=['get_unverified_chain', 'getpeercert'])
        ssl_obj.get_unverified_chain.return_value = [b'leaf', b'intermediate']

        assert TLSProbe._read_chain(ssl_obj, verified=False) == ((b'leaf', b'intermediate'), True)
        ssl_obj.getpeercert.assert_not_called()

    def test_verified_chain_used_after_verification(self):
        ssl_obj = Mock(spec=['get_verified_chain', 'get_unverified_chain', 'getpeercert'])
        ssl_obj.get_verified_chain.return_value = [b'leaf', b'root']

        assert TLSProbe._read_chain(ssl_obj, verified=True) == ((b'leaf', b'root'), True)
        ssl_obj.get_unverified_chain.assert_not_called()

    def test_leaf_only_on_older_runtimes(self):
        ssl_obj = Mock(spec=['getpeercert'])
        ssl_obj.getpeercert.return_value = b'leaf'

        assert TLSProbe._read_chain(ssl_obj, verified=False) == ((b'leaf',), False)

    def test_empty_chain_falls_back_to_leaf(self):
        ssl_obj = Mock(spec=['get_unverified_chain', 'getpeercert'])
        ssl_obj.get_unverified_chain.return_value = []
        ssl_obj.getpeercert.return_value = b'leaf'

        assert TLSProbe._read_chain(ssl_obj, verified=False) == ((b'leaf',), False)

    def test_no_certificate(self):
        ssl_obj = Mock(spec=['getpeercert'])
        ssl_obj.getpeercert.return_value = None

        assert TLSProbe._read_chain(ssl_obj, verified=False) == ((), False)


def test_trusted_subjects_cached():
    subjects = trusted_subjects()

    assert isinstance(subjects, frozenset)
    assert trusted_subjects() is subjects

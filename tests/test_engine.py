import datetime
import socket
import ssl
import threading

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from cipherscan import *
from cipherscan.engine import make_socket

SERVER_CIPHERS = ['ECDHE-RSA-AES256-GCM-SHA384', 'ECDHE-RSA-AES128-GCM-SHA256', 'ECDHE-RSA-CHACHA20-POLY1305']

def unused_port():
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]

def test_list_ciphers():
    engine = OpenSSLEngine()
    assert engine.list_ciphers(':'.join(SERVER_CIPHERS)) == SERVER_CIPHERS

def test_list_ciphers_no_match():
    with pytest.raises(HandshakeError):
        OpenSSLEngine().list_ciphers('NOT-A-CIPHER')

def test_sslv2_unavailable():
    with pytest.raises(HandshakeError):
        OpenSSLEngine().handshake(ConnectionSettings('127.0.0.1', unused_port()), 'ALL', ProtocolVersion.SSLv2)

def test_connection_refused():
    settings = ConnectionSettings('127.0.0.1', unused_port(), timeout_in_seconds=2)
    with pytest.raises(HandshakeError):
        make_socket(settings)
    result = probe(OpenSSLEngine(), settings, DEFAULT_CIPHER_SPEC)
    assert result.status == ProbeStatus.CONNECTION_FAILURE

def make_certificate(tmp_path):
    key = rsa.generate_private_key(65537, 2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'localhost')])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName('localhost')]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / 'cert.pem'
    key_path = tmp_path / 'key.pem'
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()))
    return cert_path, key_path

def serve(listener, context, stop):
    while not stop.is_set():
        try:
            conn, _ = listener.accept()
        except socket.timeout:
            continue
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            try:
                with context.wrap_socket(conn, server_side=True):
                    pass
            except (ssl.SSLError, OSError):
                # Refused protocol versions end up here.
                continue

@pytest.fixture(params=[True, False], ids=['server_order', 'client_order'])
def local_server(request, tmp_path):
    cert_path, key_path = make_certificate(tmp_path)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.set_ciphers(':'.join(SERVER_CIPHERS))
    context.load_cert_chain(cert_path, key_path)
    # A single group keeps the reported key exchange predictable.
    context.set_ecdh_curve('prime256v1')
    if request.param:
        context.options |= ssl.OP_CIPHER_SERVER_PREFERENCE
    else:
        context.options &= ~ssl.OP_CIPHER_SERVER_PREFERENCE

    listener = socket.socket()
    listener.bind(('127.0.0.1', 0))
    listener.listen(8)
    listener.settimeout(0.2)
    stop = threading.Event()
    thread = threading.Thread(target=serve, args=(listener, context, stop), daemon=True)
    thread.start()

    settings = ConnectionSettings('127.0.0.1', listener.getsockname()[1], server_name='localhost', timeout_in_seconds=5, trust_anchors=str(cert_path))
    yield settings, request.param

    stop.set()
    thread.join(5)
    listener.close()

def test_local_server_scan(local_server):
    settings, server_order = local_server
    engine = OpenSSLEngine()

    preferences = discover(engine, settings)
    names = [record.cipher for record in preferences]
    assert sorted(names) == sorted(SERVER_CIPHERS)
    for record in preferences:
        assert record.protocols == [ProtocolVersion.TLS1_2]
        assert record.public_key_bits == 2048
        assert record.signature_algorithm == 'sha256WithRSAEncryption'
        # The self-signed certificate is its own trust anchor.
        assert record.trusted
        assert not record.ocsp_stapled
        assert record.forward_secrecy == 'ECDH,P-256,256bits'
        # Python servers issue session tickets by default.
        assert record.ticket_hint is not None

    if server_order:
        assert names == SERVER_CIPHERS
        assert classify(engine, settings, preferences) == OrderingVerdict.SERVER_SIDE
    else:
        assert classify(engine, settings, preferences) == OrderingVerdict.CLIENT_SIDE

def test_local_server_untrusted(local_server):
    settings, _ = local_server
    settings.trust_anchors = None
    attempt = OpenSSLEngine().handshake(settings, DEFAULT_CIPHER_SPEC, ProtocolVersion.TLS1_2)
    assert attempt.protocol == ProtocolVersion.TLS1_2
    assert attempt.cipher in SERVER_CIPHERS
    assert not attempt.trusted

def test_local_server_refuses_old_protocol(local_server):
    settings, _ = local_server
    with pytest.raises(HandshakeError):
        OpenSSLEngine().handshake(settings, DEFAULT_CIPHER_SPEC, ProtocolVersion.TLS1_0)

def test_local_server_handshake_metadata(local_server):
    settings, _ = local_server
    attempt = OpenSSLEngine().handshake(settings, 'ECDHE-RSA-AES128-GCM-SHA256', ProtocolVersion.TLS1_2)
    assert attempt.cipher == 'ECDHE-RSA-AES128-GCM-SHA256'
    assert attempt.forward_secrecy == 'ECDH,P-256,256bits'
    assert isinstance(attempt.ticket_hint, int)

@pytest.mark.parametrize('timeout', [None, 0, -1])
def test_handshake_requires_timeout(timeout):
    settings = ConnectionSettings('127.0.0.1', unused_port(), timeout_in_seconds=timeout)
    with pytest.raises(ValueError):
        OpenSSLEngine().handshake(settings, DEFAULT_CIPHER_SPEC, ProtocolVersion.TLS1_2)

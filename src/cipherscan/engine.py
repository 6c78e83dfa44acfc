from typing import Optional, List
from dataclasses import dataclass
import logging
import socket
import os

from .names_and_numbers import ProtocolVersion, DEFAULT_EACH_CIPHER_SPEC

logger = logging.getLogger(__name__)

# Default socket connection timeout, in seconds.
DEFAULT_TIMEOUT: float = 10

class ScanError(Exception):
    """ Base error class for errors that occur during scanning. """
    pass

class HandshakeError(ScanError):
    """ A single handshake attempt did not negotiate a protocol (unreachable, timeout, rejected). """
    pass

class EngineUnavailableError(ScanError):
    """ The TLS library needed to perform handshakes cannot be loaded. """
    pass

@dataclass
class ConnectionSettings:
    """
    Settings for a connection to a server: where to connect, which name to send
    in the SNI extension, how long to wait, and which trust anchors to verify against.
    """
    host: str
    port: int = 443
    # None disables the SNI extension.
    server_name: Optional[str] = None
    timeout_in_seconds: float = DEFAULT_TIMEOUT
    # Bundle file or hashed directory of CA certificates, None for the system defaults.
    trust_anchors: Optional[str] = None

@dataclass
class HandshakeAttempt:
    """
    Everything one handshake attempt tells us about the session.
    `cipher` is None when the connection went through without agreeing on a cipher.
    """
    protocol: Optional[ProtocolVersion]
    cipher: Optional[str]
    public_key_bits: Optional[int] = None
    signature_algorithm: Optional[str] = None
    trusted: bool = False
    ticket_hint: Optional[int] = None
    ocsp_stapled: bool = False
    forward_secrecy: Optional[str] = None

class HandshakeEngine:
    """
    Performs single, independent TLS handshakes. Implementations must not reuse
    sessions between calls, and must bound every call by the settings' timeout.
    """
    def handshake(self, settings: ConnectionSettings, cipher_spec: str, protocol: Optional[ProtocolVersion] = None) -> HandshakeAttempt:
        """
        Connects to the target offering `cipher_spec` (an OpenSSL cipher string) and only `protocol`,
        or the library's default range up to TLS 1.2 if `protocol` is None.
        Raises HandshakeError if no protocol could be negotiated.
        """
        raise NotImplementedError

    def list_ciphers(self, cipher_spec: str = DEFAULT_EACH_CIPHER_SPEC) -> List[str]:
        """ Expands a cipher string into the individual cipher names the library supports. """
        raise NotImplementedError

def make_socket(settings: ConnectionSettings) -> socket.socket:
    """
    Creates and connects a socket to the target server.
    """
    try:
        return socket.create_connection((settings.host, settings.port), timeout=settings.timeout_in_seconds)
    except TimeoutError as e:
        raise HandshakeError(f"Connection to {settings.host}:{settings.port} timed out after {settings.timeout_in_seconds} seconds") from e
    except socket.gaierror as e:
        raise HandshakeError(f"Could not resolve host {settings.host}") from e
    except socket.error as e:
        raise HandshakeError(f"Could not connect to {settings.host}:{settings.port}") from e

# Largest chunk moved between the socket and OpenSSL's memory buffers at once.
BUFFER_SIZE = 65536

class OpenSSLEngine(HandshakeEngine):
    """
    Handshake engine backed by pyOpenSSL. Reads the negotiated parameters and
    peer certificate through the library instead of scraping `openssl s_client`.

    OpenSSL runs over memory buffers and this class moves the bytes to and from the socket,
    keeping a copy of the server's flight so scapy can read the key exchange and ticket.
    """
    def __init__(self) -> None:
        try:
            from OpenSSL import SSL
            from .protocol import read_server_flight
        except ImportError as e:
            raise EngineUnavailableError(f'pyOpenSSL and scapy are required to perform handshakes: {e}') from e
        self._SSL = SSL
        self._read_server_flight = read_server_flight

        # SSLv2 is absent from every OpenSSL build pyOpenSSL supports, so it has no flag here.
        self._no_flag_by_protocol = {
            ProtocolVersion.SSLv3: SSL.OP_NO_SSLv3,
            ProtocolVersion.TLS1_0: SSL.OP_NO_TLSv1,
            ProtocolVersion.TLS1_1: SSL.OP_NO_TLSv1_1,
            ProtocolVersion.TLS1_2: SSL.OP_NO_TLSv1_2,
        }

    def _make_context(self, cipher_spec: str):
        SSL = self._SSL
        context = SSL.Context(SSL.TLS_CLIENT_METHOD)
        try:
            # Security level 0 keeps legacy suites and small keys offerable.
            context.set_cipher_list(f'{cipher_spec}:@SECLEVEL=0'.encode('ascii'))
        except SSL.Error as e:
            raise HandshakeError(f'No cipher matches {cipher_spec!r}') from e
        return context

    def list_ciphers(self, cipher_spec: str = DEFAULT_EACH_CIPHER_SPEC) -> List[str]:
        connection = self._SSL.Connection(self._make_context(cipher_spec), None)
        # TLS 1.3 suites are configured separately and never selected by a cipher string.
        return [name for name in connection.get_cipher_list() if not name.startswith('TLS_')]

    def _load_trust_anchors(self, context, trust_anchors: Optional[str]) -> None:
        if trust_anchors is None:
            context.set_default_verify_paths()
        elif os.path.isdir(trust_anchors):
            context.load_verify_locations(None, trust_anchors)
        else:
            context.load_verify_locations(trust_anchors)

    def _send_pending(self, connection, sock: socket.socket) -> None:
        """ Writes everything OpenSSL queued for the server to the socket. """
        while True:
            try:
                data = connection.bio_read(BUFFER_SIZE)
            except self._SSL.WantReadError:
                return
            sock.sendall(data)

    def handshake(self, settings: ConnectionSettings, cipher_spec: str, protocol: Optional[ProtocolVersion] = None) -> HandshakeAttempt:
        SSL = self._SSL
        import select

        if settings.timeout_in_seconds is None or settings.timeout_in_seconds <= 0:
            raise ValueError(f'Handshakes need a positive timeout, got {settings.timeout_in_seconds!r}')
        if protocol == ProtocolVersion.SSLv2:
            raise HandshakeError('SSLv2 is not available in the local TLS library')

        context = self._make_context(cipher_spec)
        forbidden_versions = SSL.OP_NO_TLSv1_3
        if protocol is not None:
            forbidden_versions |= sum(flag for p, flag in self._no_flag_by_protocol.items() if p != protocol)
        context.set_options(forbidden_versions)
        self._load_trust_anchors(context, settings.trust_anchors)

        # Collect verification results without ever aborting the handshake.
        verification: List[bool] = []
        def verify_callback(connection, x509, error_number, error_depth, ok) -> bool:
            verification.append(bool(ok))
            return True
        context.set_verify(SSL.VERIFY_PEER, verify_callback)

        ocsp_responses: List[bytes] = []
        def ocsp_callback(connection, ocsp_data: bytes, data) -> bool:
            ocsp_responses.append(ocsp_data)
            return True
        context.set_ocsp_client_callback(ocsp_callback)

        logger.debug(f'Handshake with {settings.host}:{settings.port} over {protocol or "default range"} offering {cipher_spec!r}')
        received = bytearray()
        with make_socket(settings) as sock:
            # No socket given, so OpenSSL reads and writes memory buffers.
            connection = SSL.Connection(context, None)
            connection.set_connect_state()
            connection.request_ocsp()
            if settings.server_name is not None:
                connection.set_tlsext_host_name(settings.server_name.encode('utf-8'))
            try:
                while True:
                    try:
                        connection.do_handshake()
                        break
                    except SSL.WantReadError as e:
                        self._send_pending(connection, sock)
                        rd, _, _ = select.select([sock], [], [], settings.timeout_in_seconds)
                        if not rd:
                            raise HandshakeError('Timed out during handshake') from e
                        data = sock.recv(BUFFER_SIZE)
                        if not data:
                            raise HandshakeError('Server closed the connection during the handshake') from e
                        received += data
                        connection.bio_write(data)
                    except SSL.Error as e:
                        raise HandshakeError(f'OpenSSL exception during handshake: {e}') from e
                self._send_pending(connection, sock)
            except OSError as e:
                raise HandshakeError(f'Connection to {settings.host}:{settings.port} failed during handshake: {e}') from e

            attempt = self._read_attempt(connection, verification, ocsp_responses, bytes(received))
            try:
                connection.shutdown()
                self._send_pending(connection, sock)
            except (SSL.Error, OSError) as e:
                logger.debug(f'Unclean shutdown from {settings.host}:{settings.port}: {e!r}')
        return attempt

    def _read_attempt(self, connection, verification: List[bool], ocsp_responses: List[bytes], received: bytes) -> HandshakeAttempt:
        version_name = connection.get_protocol_version_name()
        try:
            protocol: Optional[ProtocolVersion] = ProtocolVersion.from_label(version_name)
        except ValueError:
            logger.warning(f'Unexpected protocol version {version_name}')
            protocol = None

        public_key_bits = None
        signature_algorithm = None
        cert = connection.get_peer_certificate()
        if cert is not None:
            public_key_bits = cert.get_pubkey().bits()
            try:
                signature_algorithm = cert.get_signature_algorithm().decode('utf-8')
            except ValueError:
                # Undefined signature algorithm OID.
                signature_algorithm = None

        cipher = connection.get_cipher_name()
        flight = self._read_server_flight(received, cipher)
        return HandshakeAttempt(
            protocol=protocol,
            cipher=cipher,
            public_key_bits=public_key_bits,
            signature_algorithm=signature_algorithm,
            trusted=bool(verification) and all(verification),
            ticket_hint=flight.ticket_hint,
            ocsp_stapled=any(ocsp_responses),
            forward_secrecy=flight.forward_secrecy,
        )

"""
Reads the plaintext part of a server's handshake flight (SSLv3 up to TLS 1.2): the
ephemeral key from ServerKeyExchange and the lifetime hint of NewSessionTicket.

Records are split here, the messages themselves are dissected by scapy's TLS layer.
Everything after the server's ChangeCipherSpec is encrypted and ignored.
"""
from typing import Iterator, Optional, Tuple
from dataclasses import dataclass
import logging

from scapy.layers.tls.crypto.groups import _tls_named_curves
from scapy.layers.tls.handshake import TLSNewSessionTicket
from scapy.layers.tls.keyexchange import ServerDHParams, ServerECDHNamedCurveParams
from cryptography.hazmat.primitives.asymmetric import ec, x25519, x448

from .names_and_numbers import RecordType, HandshakeType, EC_CURVE_TYPE_NAMED

logger = logging.getLogger(__name__)

RECORD_HEADER_LENGTH = 5
HANDSHAKE_HEADER_LENGTH = 4

# Curves named in TLS that cryptography can load points for.
EC_CURVES = {
    'secp192r1': ec.SECP192R1,
    'secp224r1': ec.SECP224R1,
    'secp256k1': ec.SECP256K1,
    'secp256r1': ec.SECP256R1,
    'secp384r1': ec.SECP384R1,
    'secp521r1': ec.SECP521R1,
    'brainpoolP256r1': ec.BrainpoolP256R1,
    'brainpoolP384r1': ec.BrainpoolP384R1,
    'brainpoolP512r1': ec.BrainpoolP512R1,
}

class ECDHParams(ServerECDHNamedCurveParams):
    """ Named-curve parameters, dissected without scapy loading the key into its own session. """
    def post_dissection(self, r):
        pass

class DHParams(ServerDHParams):
    """ Finite-field parameters, dissected without scapy loading the key into its own session. """
    def post_dissection(self, r):
        pass

@dataclass
class ServerFlight:
    forward_secrecy: Optional[str] = None
    ticket_hint: Optional[int] = None

def _bytes_to_int(b: bytes) -> int:
    return int.from_bytes(b, byteorder='big')

def iter_handshake_messages(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """
    Yields `(handshake_type, message)` for each complete handshake message the server sent
    before ChangeCipherSpec. Messages may span records; `message` keeps its 4-byte header.
    """
    handshake_data = b''
    start = 0
    while start + RECORD_HEADER_LENGTH <= len(data):
        record_type = data[start]
        record_length = _bytes_to_int(data[start+3:start+5])
        fragment = data[start+RECORD_HEADER_LENGTH:start+RECORD_HEADER_LENGTH+record_length]
        start += RECORD_HEADER_LENGTH + record_length
        if record_type == RecordType.CHANGE_CIPHER_SPEC:
            break
        if record_type == RecordType.HANDSHAKE:
            handshake_data += fragment

    start = 0
    while start + HANDSHAKE_HEADER_LENGTH <= len(handshake_data):
        message_length = _bytes_to_int(handshake_data[start+1:start+4])
        end = start + HANDSHAKE_HEADER_LENGTH + message_length
        if end > len(handshake_data):
            logger.debug(f'Handshake message of type {handshake_data[start]} is truncated')
            return
        yield handshake_data[start], handshake_data[start:end]
        start = end

def key_exchange_of(cipher: str) -> Optional[str]:
    """
    Returns 'ECDH' or 'DH' for OpenSSL cipher names with an ephemeral key exchange, else None.
    PSK and SRP suites prefix their parameters with other data and are not read.
    """
    tokens = set(cipher.split('-'))
    if tokens & {'PSK', 'SRP'}:
        return None
    if tokens & {'ECDHE', 'AECDH'}:
        return 'ECDH'
    if tokens & {'DHE', 'EDH', 'ADH'}:
        return 'DH'
    return None

def describe_ephemeral_key(key) -> Optional[str]:
    """
    Formats a `cryptography` public key used for the key exchange, e.g. 'ECDH,P-256,256bits'.
    """
    nist_names = {'secp256r1': 'P-256', 'secp384r1': 'P-384', 'secp521r1': 'P-521'}
    if isinstance(key, ec.EllipticCurvePublicKey):
        return f'ECDH,{nist_names.get(key.curve.name, key.curve.name)},{key.key_size}bits'
    elif isinstance(key, x25519.X25519PublicKey):
        return 'X25519,253bits'
    elif isinstance(key, x448.X448PublicKey):
        return 'X448,448bits'
    logger.warning(f'Unknown ephemeral key type {type(key).__name__}')
    return None

def describe_ecdh_params(params: ECDHParams) -> Optional[str]:
    if params.curve_type != EC_CURVE_TYPE_NAMED:
        logger.warning(f'Explicit curve parameters (type {params.curve_type}) are not supported')
        return None
    name = _tls_named_curves.get(params.named_curve)
    if name == 'x25519':
        key = x25519.X25519PublicKey.from_public_bytes(params.point)
    elif name == 'x448':
        key = x448.X448PublicKey.from_public_bytes(params.point)
    elif name in EC_CURVES:
        key = ec.EllipticCurvePublicKey.from_encoded_point(EC_CURVES[name](), params.point)
    else:
        logger.warning(f'Unsupported named curve {name or params.named_curve}')
        return None
    return describe_ephemeral_key(key)

def describe_dh_params(params: DHParams) -> str:
    return f'DH,{_bytes_to_int(params.dh_p).bit_length()}bits'

def read_server_flight(data: bytes, cipher: Optional[str]) -> ServerFlight:
    """
    Extracts the forward-secrecy parameters and session-ticket hint from the bytes a server
    sent during a handshake that negotiated `cipher`. Missing messages leave the field None.
    """
    flight = ServerFlight()
    key_exchange = key_exchange_of(cipher) if cipher else None
    for handshake_type, message in iter_handshake_messages(data):
        if handshake_type == HandshakeType.new_session_ticket:
            flight.ticket_hint = TLSNewSessionTicket(message).lifetime
        elif handshake_type == HandshakeType.server_key_exchange and key_exchange is not None:
            body = message[HANDSHAKE_HEADER_LENGTH:]
            try:
                if key_exchange == 'ECDH':
                    flight.forward_secrecy = describe_ecdh_params(ECDHParams(body))
                else:
                    flight.forward_secrecy = describe_dh_params(DHParams(body))
            except ValueError as e:
                logger.warning(f'Could not read the {key_exchange} parameters of {cipher}: {e}')
    return flight

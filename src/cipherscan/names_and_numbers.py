from functools import total_ordering
from enum import Enum, IntEnum

@total_ordering
class ProtocolVersion(Enum):
    # Keep protocols in sweep order, lowest first.
    SSLv2 = 'SSLv2'
    SSLv3 = 'SSLv3'
    TLS1_0 = 'TLSv1'
    TLS1_1 = 'TLSv1.1'
    TLS1_2 = 'TLSv1.2'

    def __repr__(self):
        return self.name
    def __lt__(self, other):
        if self.__class__ != other.__class__:
            return NotImplemented
        members = list(self.__class__)
        return members.index(self) < members.index(other)

    @classmethod
    def from_label(cls, label: str) -> 'ProtocolVersion':
        """ Maps a version label as reported by OpenSSL (e.g. 'TLSv1.2') to its member. """
        return cls(label)

class OrderingVerdict(Enum):
    """ Which side of the connection dictates the cipher suite priority. """
    SERVER_SIDE = 'server'
    CLIENT_SIDE = 'client'

class ProbeStatus(Enum):
    SUCCESS = 'success'
    # Transport was established but no cipher was agreed.
    CIPHER_REJECTED = 'cipher_rejected'
    # No protocol version produced a handshake at all.
    CONNECTION_FAILURE = 'connection_failure'

# How OpenSSL prints a session without a negotiated cipher.
NO_CIPHER = '(NONE)'

# Every suite the library knows, RSA key exchange pushed to the end.
DEFAULT_CIPHER_SPEC = 'ALL:COMPLEMENTOFALL:+aRSA'

# Expanded into single suites when testing each cipher individually.
DEFAULT_EACH_CIPHER_SPEC = 'ALL:COMPLEMENTOFALL'

class RecordType(IntEnum):
    CHANGE_CIPHER_SPEC = 20
    ALERT = 21
    HANDSHAKE = 22
    APPLICATION_DATA = 23

class HandshakeType(IntEnum):
    hello_request = 0
    client_hello = 1
    server_hello = 2
    new_session_ticket = 4
    certificate = 11
    server_key_exchange = 12
    certificate_request = 13
    server_hello_done = 14
    certificate_status = 22

# ServerECDHParams.curve_type for a curve identified by its NamedCurve id.
EC_CURVE_TYPE_NAMED = 3

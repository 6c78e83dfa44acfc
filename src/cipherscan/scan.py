from typing import Union, List, Optional, Iterator, Callable, Tuple, Dict
from urllib.parse import urlparse
from datetime import datetime, timezone
import dataclasses
import logging
import time
import re

from .engine import HandshakeEngine, HandshakeAttempt, HandshakeError, ConnectionSettings, OpenSSLEngine
from .names_and_numbers import ProtocolVersion, OrderingVerdict, ProbeStatus, NO_CIPHER, DEFAULT_CIPHER_SPEC, DEFAULT_EACH_CIPHER_SPEC

logger = logging.getLogger(__name__)

# Handshakes per suite when benchmarking.
DEFAULT_BENCHMARK_ITERATIONS: int = 30

@dataclasses.dataclass
class SessionRecord:
    """
    What a server negotiated for one cipher specification.
    `protocols` only lists the trailing run of versions that agreed on `cipher`.
    """
    cipher: str
    protocols: List[ProtocolVersion]
    public_key_bits: Optional[int]
    signature_algorithm: Optional[str]
    trusted: bool
    ticket_hint: Optional[int]
    ocsp_stapled: bool
    forward_secrecy: Optional[str]

@dataclasses.dataclass
class ProbeResult:
    status: ProbeStatus
    # Present for SUCCESS and, partially filled, for CIPHER_REJECTED.
    record: Optional[SessionRecord] = None

def _record_from_attempt(attempt: HandshakeAttempt, cipher: str, protocols: List[ProtocolVersion]) -> SessionRecord:
    return SessionRecord(
        cipher=cipher,
        protocols=list(protocols),
        public_key_bits=attempt.public_key_bits,
        signature_algorithm=attempt.signature_algorithm,
        trusted=attempt.trusted,
        ticket_hint=attempt.ticket_hint,
        ocsp_stapled=attempt.ocsp_stapled,
        forward_secrecy=attempt.forward_secrecy,
    )

def probe(engine: HandshakeEngine, connection_settings: ConnectionSettings, cipher_spec: str) -> ProbeResult:
    """
    Sweeps every protocol version from SSLv2 up to TLS 1.2 with the same cipher specification.

    Metadata comes from the last successful handshake. Its protocol list only keeps the contiguous
    run of successes, ending at that handshake, that negotiated the very same cipher.
    """
    current_cipher: Optional[str] = None
    protocols: List[ProtocolVersion] = []
    last_success: Optional[HandshakeAttempt] = None
    last_rejection: Optional[HandshakeAttempt] = None

    for protocol in ProtocolVersion:
        settings = connection_settings
        if protocol == ProtocolVersion.SSLv2:
            # SSLv2 predates the server name extension.
            settings = dataclasses.replace(connection_settings, server_name=None)

        try:
            attempt = engine.handshake(settings, cipher_spec, protocol)
        except HandshakeError as e:
            logger.debug(f'No {protocol.name} handshake: {e}')
            continue

        if attempt.protocol is None:
            continue
        if attempt.cipher is None or attempt.cipher == NO_CIPHER:
            last_rejection = attempt
            continue

        if current_cipher is not None and attempt.cipher != current_cipher:
            protocols = [attempt.protocol]
        else:
            protocols.append(attempt.protocol)
        current_cipher = attempt.cipher
        last_success = attempt

    if last_success is not None and current_cipher is not None:
        return ProbeResult(ProbeStatus.SUCCESS, _record_from_attempt(last_success, current_cipher, protocols))
    if last_rejection is not None:
        logger.debug(f'Server answered but agreed on no cipher for {cipher_spec!r}')
        assert last_rejection.protocol is not None
        return ProbeResult(ProbeStatus.CIPHER_REJECTED, _record_from_attempt(last_rejection, NO_CIPHER, [last_rejection.protocol]))
    return ProbeResult(ProbeStatus.CONNECTION_FAILURE)

def exclude_ciphers(ciphers: List[str], cipher_spec: str) -> str:
    """
    Prefixes `cipher_spec` with an exclusion of each cipher, most recently found first.
    """
    return ':'.join([f'!{cipher}' for cipher in reversed(ciphers)] + [cipher_spec])

def _iterate_preferences(engine: HandshakeEngine, connection_settings: ConnectionSettings, cipher_spec: str, delay: float) -> Iterator[SessionRecord]:
    """
    Continually probes the server, excluding every cipher it picked so far,
    until it refuses the handshake.
    """
    found: List[str] = []
    while True:
        offered = exclude_ciphers(found, cipher_spec)
        logger.debug(f'Offering {offered!r} after {len(found)} accepted ciphers')

        result = probe(engine, connection_settings, offered)
        if delay > 0:
            time.sleep(delay)

        if result.status != ProbeStatus.SUCCESS:
            logger.debug(f'Enumeration ended with {result.status.name}')
            break
        assert result.record is not None

        if result.record.cipher in found:
            # The engine ignored an exclusion; continuing would loop forever.
            logger.warning(f'Cipher {result.record.cipher} was accepted despite being excluded')
            break

        found.append(result.record.cipher)
        yield result.record

def discover(
    engine: HandshakeEngine,
    connection_settings: ConnectionSettings,
    cipher_spec: str = DEFAULT_CIPHER_SPEC,
    delay: float = 0,
    on_response: Callable[[SessionRecord], None] = lambda r: None,
    ) -> List[SessionRecord]:
    """
    Builds the server's cipher preference list, most preferred first, by offering
    `cipher_spec` and excluding each accepted cipher from the next round.
    Sleeps `delay` seconds after every probe.
    """
    logger.info(f"Enumerating cipher preferences of {connection_settings.host}:{connection_settings.port}")
    preferences: List[SessionRecord] = []
    for record in _iterate_preferences(engine, connection_settings, cipher_spec, delay):
        logger.info(f"Priority {len(preferences) + 1}: {record.cipher} over {', '.join(p.value for p in record.protocols)}")
        preferences.append(record)
        on_response(record)
    return preferences

def classify(engine: HandshakeEngine, connection_settings: ConnectionSettings, preferences: List[SessionRecord]) -> OrderingVerdict:
    """
    Offers the top (up to three) discovered ciphers in reverse order. A server that picks the
    first one offered follows the client's order; otherwise it enforces its own.
    """
    if len(preferences) < 2:
        return OrderingVerdict.SERVER_SIDE

    reordered = [record.cipher for record in reversed(preferences[:3])]
    result = probe(engine, connection_settings, ':'.join(reordered))
    if result.status != ProbeStatus.SUCCESS:
        logger.info('Reordered probe failed, assuming server side ordering')
        return OrderingVerdict.SERVER_SIDE
    assert result.record is not None

    if result.record.cipher == reordered[0]:
        return OrderingVerdict.CLIENT_SIDE
    return OrderingVerdict.SERVER_SIDE

def measure(
    engine: HandshakeEngine,
    connection_settings: ConnectionSettings,
    cipher: str,
    iterations: int = DEFAULT_BENCHMARK_ITERATIONS,
    clock: Callable[[], int] = time.perf_counter_ns,
    ) -> int:
    """
    Average handshake time in microseconds for `cipher`, over `iterations` connections.

    Stops at the first failed handshake, but still divides by `iterations`.
    """
    if iterations < 1:
        raise ValueError(f'Benchmark needs at least one iteration, got {iterations}')
    logger.info(f"Benchmarking {iterations} handshakes with {cipher}")
    start = clock()
    for i in range(iterations):
        try:
            attempt = engine.handshake(connection_settings, cipher)
        except HandshakeError as e:
            logger.debug(f'Benchmark connection {i + 1} failed: {e}')
            break
        if attempt.protocol is None or attempt.cipher in (None, NO_CIPHER):
            logger.debug(f'Benchmark connection {i + 1} negotiated no cipher')
            break
    elapsed = clock() - start
    logger.debug(f'Benchmark done in {elapsed} nanoseconds')
    return elapsed // 1000 // iterations

def scan_each_cipher(
    engine: HandshakeEngine,
    connection_settings: ConnectionSettings,
    cipher_spec: str = DEFAULT_EACH_CIPHER_SPEC,
    delay: float = 0,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> List[Tuple[str, Optional[SessionRecord]]]:
    """
    Probes every cipher the local library knows, one at a time, regardless of server preference.
    Returns each cipher name with its session record, or None if the server refused it.
    """
    ciphers = engine.list_ciphers(cipher_spec)
    logger.info(f"Testing {len(ciphers)} ciphers individually against {connection_settings.host}:{connection_settings.port}")
    results: List[Tuple[str, Optional[SessionRecord]]] = []
    for i, cipher in enumerate(ciphers):
        result = probe(engine, connection_settings, cipher)
        results.append((cipher, result.record if result.status == ProbeStatus.SUCCESS else None))
        if delay > 0:
            time.sleep(delay)
        progress(i + 1, len(ciphers))
    return results

@dataclasses.dataclass
class ServerScanResult:
    connection: ConnectionSettings
    preferences: List[SessionRecord]
    ordering: OrderingVerdict
    # Average handshake time per cipher, only filled when benchmarking.
    handshake_microseconds: Dict[str, int] = dataclasses.field(default_factory=dict)
    date: datetime = dataclasses.field(default_factory=lambda: datetime.now(tz=timezone.utc).replace(microsecond=0))

def scan_server(
    connection_settings: Union[ConnectionSettings, str],
    engine: Optional[HandshakeEngine] = None,
    cipher_spec: str = DEFAULT_CIPHER_SPEC,
    delay: float = 0,
    benchmark: bool = False,
    iterations: int = DEFAULT_BENCHMARK_ITERATIONS,
    on_response: Callable[[SessionRecord], None] = lambda r: None,
    progress: Callable[[int, int], None] = lambda current, total: None,
    ) -> ServerScanResult:
    """
    Discovers the server's cipher preference list, then whether the server or the client
    decides the order, then optionally benchmarks each accepted cipher.
    `on_response` is called for each discovered cipher, `progress` after each benchmarked one.

    Every step runs sequentially, one handshake at a time.
    """
    if benchmark and iterations < 1:
        raise ValueError(f'Benchmark needs at least one iteration, got {iterations}')
    if isinstance(connection_settings, str):
        host, port = parse_target(connection_settings)
        connection_settings = ConnectionSettings(host, port, server_name=host)

    if engine is None:
        engine = OpenSSLEngine()

    logger.info(f"Scanning {connection_settings.host}:{connection_settings.port}")

    preferences = discover(engine, connection_settings, cipher_spec, delay, on_response)
    ordering = classify(engine, connection_settings, preferences)
    logger.info(f"Cipher ordering is {ordering.value} side")

    result = ServerScanResult(connection=connection_settings, preferences=preferences, ordering=ordering)

    if benchmark:
        for i, record in enumerate(preferences):
            result.handshake_microseconds[record.cipher] = measure(engine, connection_settings, record.cipher, iterations)
            progress(i + 1, len(preferences))

    return result

def parse_target(target: str, default_port: int = 443) -> Tuple[str, int]:
    """
    Parses the target string into a host and port, stripping protocol and path.
    """
    if not re.match(r'\w+://', target):
        # Without a scheme, urlparse will treat the target as a path.
        # Prefix // to make it a netloc.
        url = urlparse('//' + target)
    else:
        url = urlparse(target, scheme='https')
    host = url.hostname or 'localhost'
    port = url.port if url.port else default_port
    return host, port

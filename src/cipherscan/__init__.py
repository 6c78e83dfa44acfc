from .names_and_numbers import ProtocolVersion, OrderingVerdict, ProbeStatus, NO_CIPHER, DEFAULT_CIPHER_SPEC, DEFAULT_EACH_CIPHER_SPEC
from .engine import ScanError, HandshakeError, EngineUnavailableError, ConnectionSettings, HandshakeAttempt, HandshakeEngine, OpenSSLEngine, DEFAULT_TIMEOUT
from .scan import SessionRecord, ProbeResult, ServerScanResult, probe, discover, classify, measure, scan_each_cipher, scan_server, exclude_ciphers, parse_target, DEFAULT_BENCHMARK_ITERATIONS
from .report import to_json_obj, render_json, render_table, render_each_cipher

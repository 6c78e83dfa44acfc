from .scan import scan_server, scan_each_cipher, parse_target, DEFAULT_BENCHMARK_ITERATIONS
from .engine import ScanError, ConnectionSettings, OpenSSLEngine, DEFAULT_TIMEOUT
from .names_and_numbers import DEFAULT_CIPHER_SPEC, DEFAULT_EACH_CIPHER_SPEC
from .report import render_json, render_table, render_each_cipher

import os
import ssl
import sys
import logging
import argparse
from typing import Optional

def find_trust_anchors(explicit: Optional[str]) -> Optional[str]:
    """
    Picks the CA bundle or directory to verify certificates against: the explicit argument,
    then the CIPHERSCAN_CAPATH environment variable, then the system OpenSSL defaults.
    """
    if explicit:
        return explicit
    if os.environ.get('CIPHERSCAN_CAPATH'):
        return os.environ['CIPHERSCAN_CAPATH']
    paths = ssl.get_default_verify_paths()
    for candidate in (paths.cafile, paths.capath):
        if candidate and os.path.exists(candidate):
            return candidate
    return None

def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="cipherscan", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument("target", help="server to scan, in the form of 'example.com', 'example.com:443', or even a full URL")
    parser.add_argument("--timeout", "-t", dest="timeout", type=float, default=DEFAULT_TIMEOUT, help="timeout of each handshake, in seconds")
    parser.add_argument("--trust-anchors", "--capath", dest="trust_anchors", default=None, help="CA bundle file or directory used to verify certificates, defaults to $CIPHERSCAN_CAPATH else the system store")
    parser.add_argument("--server-name-indication", "-s", default=None, help="value to be used in the SNI extension, defaults to the target host, pass empty string to not send SNI")
    parser.add_argument("--cipher-spec", default=None, help=f"OpenSSL cipher string to start from, defaults to '{DEFAULT_CIPHER_SPEC}' (or '{DEFAULT_EACH_CIPHER_SPEC}' with --all-ciphers)")
    parser.add_argument("--delay", "-d", type=float, default=0, help="seconds to wait after each probe, for servers that rate limit connections")
    parser.add_argument("--benchmark", "-b", default=False, action=argparse.BooleanOptionalAction, help="measure the average handshake time of each accepted cipher")
    parser.add_argument("--iterations", type=int, default=DEFAULT_BENCHMARK_ITERATIONS, help="handshakes per cipher when benchmarking")
    parser.add_argument("--json", "-j", default=False, action=argparse.BooleanOptionalAction, help="print results as JSON instead of a table")
    parser.add_argument("--all-ciphers", "-a", default=False, action=argparse.BooleanOptionalAction, help="test every known cipher individually instead of discovering the preference order")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="increase output verbosity")
    parser.add_argument("--debug", default=False, action=argparse.BooleanOptionalAction, help="log every handshake attempt")
    parser.add_argument("--progress", default=False, action=argparse.BooleanOptionalAction, help="write lines with progress to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(
        datefmt='%Y-%m-%d %H:%M:%S',
        format='{asctime}.{msecs:0<3.0f} {module} {levelname}: {message}',
        style='{',
        level=logging.DEBUG if args.debug else [logging.WARNING, logging.INFO, logging.DEBUG][min(2, args.verbose)]
    )

    if args.iterations < 1:
        parser.error("--iterations must be at least 1")

    host, port = parse_target(args.target)

    server_name: Optional[str]
    if args.server_name_indication is None:
        # Argument unset, default to host.
        server_name = host
    elif args.server_name_indication == '':
        # Argument explicitly set to empty string, interpret as "no SNI".
        server_name = None
    else:
        server_name = args.server_name_indication

    settings = ConnectionSettings(
        host=host,
        port=port,
        server_name=server_name,
        timeout_in_seconds=args.timeout,
        trust_anchors=find_trust_anchors(args.trust_anchors),
    )

    if args.progress:
        on_response = lambda record: print(f'found {record.cipher}', flush=True, file=sys.stderr)
        progress = lambda current, total: print(f'{current/total:.0%}', flush=True, file=sys.stderr)
    else:
        on_response = lambda record: None
        progress = lambda current, total: None

    try:
        engine = OpenSSLEngine()
        if args.all_ciphers:
            results = scan_each_cipher(engine, settings, args.cipher_spec or DEFAULT_EACH_CIPHER_SPEC, delay=args.delay, progress=progress)
            print(render_each_cipher(f'{host}:{port}', results))
        else:
            result = scan_server(
                settings,
                engine=engine,
                cipher_spec=args.cipher_spec or DEFAULT_CIPHER_SPEC,
                delay=args.delay,
                benchmark=args.benchmark,
                iterations=args.iterations,
                on_response=on_response,
                progress=progress,
            )
            print(render_json(result) if args.json else render_table(result))
    except ScanError as e:
        print(f'Scan error: {e.args[0]}', file=sys.stderr)
        if args.verbose > 0:
            raise
        else:
            sys.exit(1)

if __name__ == '__main__':
    main()

"""
Renders scan results as an aligned terminal table or as a JSON document.

Absent values are only turned into the string 'None' here, never in the scan itself.
"""
from typing import Any, List, Optional, Tuple, Dict
import json

from .names_and_numbers import OrderingVerdict
from .scan import ServerScanResult, SessionRecord

# Matches `date -u +%Y-%m-%dT%H:%M:%S.0`, kept for consumers of older reports.
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.0'

def _display(value: Any) -> str:
    return 'None' if value is None else str(value)

def _protocols(record: SessionRecord) -> List[str]:
    return [protocol.value for protocol in record.protocols]

def _align(rows: List[List[str]]) -> str:
    """ Pads every column to its widest cell, like `column -t`. """
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return '\n'.join('  '.join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows)

def to_json_obj(result: ServerScanResult) -> Dict[str, Any]:
    """
    Converts a scan result to the JSON report layout: every scalar is a string, and
    the public key and signature algorithm are wrapped in lists.
    """
    suites = []
    for record in result.preferences:
        suite = {
            'cipher': record.cipher,
            'protocols': _protocols(record),
            'pubkey': [_display(record.public_key_bits)],
            'sigalg': [_display(record.signature_algorithm)],
            'trusted': _display(record.trusted),
            'ticket_hint': _display(record.ticket_hint),
            'ocsp_stapling': _display(record.ocsp_stapled),
            'pfs': _display(record.forward_secrecy),
        }
        if record.cipher in result.handshake_microseconds:
            suite['avg_handshake_microseconds'] = str(result.handshake_microseconds[record.cipher])
        suites.append(suite)

    return {
        'target': f'{result.connection.host}:{result.connection.port}',
        'utctimestamp': result.date.strftime(TIMESTAMP_FORMAT),
        'serverside': _display(result.ordering == OrderingVerdict.SERVER_SIDE),
        'ciphersuite': suites,
    }

def render_json(result: ServerScanResult, indent: Optional[int] = None) -> str:
    return json.dumps(to_json_obj(result), indent=indent)

def render_table(result: ServerScanResult) -> str:
    benchmarked = bool(result.handshake_microseconds)
    header = ['prio', 'ciphersuite', 'protocols', 'pubkey_size', 'signature_algoritm', 'trusted', 'ticket_hint', 'ocsp_staple', 'pfs']
    if benchmarked:
        header.append('avg_handshake_microsecs')

    rows = [header]
    for i, record in enumerate(result.preferences):
        row = [
            str(i + 1),
            record.cipher,
            ','.join(_protocols(record)),
            _display(record.public_key_bits),
            _display(record.signature_algorithm),
            _display(record.trusted),
            _display(record.ticket_hint),
            _display(record.ocsp_stapled),
            _display(record.forward_secrecy),
        ]
        if benchmarked:
            row.append(_display(result.handshake_microseconds.get(record.cipher)))
        rows.append(row)

    lines = [f'Target: {result.connection.host}:{result.connection.port}', '', _align(rows), '']
    if any(record.ocsp_stapled for record in result.preferences):
        lines.append('OCSP stapling: supported')
    else:
        lines.append('OCSP stapling: not supported')
    if result.ordering == OrderingVerdict.SERVER_SIDE:
        lines.append('Server side cipher ordering')
    else:
        lines.append('Client side cipher ordering')
    return '\n'.join(lines)

def render_each_cipher(target: str, results: List[Tuple[str, Optional[SessionRecord]]]) -> str:
    rows = [['cipher', 'protocols', 'supported']]
    for cipher, record in results:
        if record is None:
            rows.append([cipher, 'None', 'unsupported'])
        else:
            rows.append([cipher, ','.join(_protocols(record)), 'supported'])
    return '\n'.join([f'Target: {target}', '', _align(rows)])

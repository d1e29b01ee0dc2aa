"""
Minimal TLS ClientHello parsing to recover the SNI hostname.
"""

import struct
from typing import Optional

TLS_HANDSHAKE = 0x16
CLIENT_HELLO = 0x01
EXT_SERVER_NAME = 0x0000
SNI_HOST_NAME = 0x00


def looks_like_tls(data: bytes) -> bool:
    return len(data) >= 3 and data[0] == TLS_HANDSHAKE and data[1] == 0x03


def extract_sni(data: bytes) -> Optional[str]:
    """
    Return the server_name from a ClientHello, or None.

    Only the first record is inspected; a ClientHello split across records
    or truncated simply yields None.
    """
    if not looks_like_tls(data) or len(data) < 5:
        return None

    try:
        record_len = struct.unpack("!H", data[3:5])[0]
        record = data[5:5 + record_len]
        if not record or record[0] != CLIENT_HELLO:
            return None

        # handshake type(1) + length(3) + version(2) + random(32)
        pos = 4 + 2 + 32
        session_id_len = record[pos]
        pos += 1 + session_id_len

        cipher_len = struct.unpack("!H", record[pos:pos + 2])[0]
        pos += 2 + cipher_len

        compression_len = record[pos]
        pos += 1 + compression_len

        extensions_len = struct.unpack("!H", record[pos:pos + 2])[0]
        pos += 2
        end = min(pos + extensions_len, len(record))

        while pos + 4 <= end:
            ext_type, ext_len = struct.unpack("!HH", record[pos:pos + 4])
            pos += 4
            if ext_type == EXT_SERVER_NAME:
                return _parse_server_name(record[pos:pos + ext_len])
            pos += ext_len
    except (IndexError, struct.error):
        return None

    return None


def _parse_server_name(ext: bytes) -> Optional[str]:
    list_len = struct.unpack("!H", ext[0:2])[0]
    pos = 2
    end = min(2 + list_len, len(ext))
    while pos + 3 <= end:
        name_type = ext[pos]
        name_len = struct.unpack("!H", ext[pos + 1:pos + 3])[0]
        pos += 3
        if name_type == SNI_HOST_NAME:
            name = ext[pos:pos + name_len]
            if len(name) != name_len:
                return None
            return name.decode("ascii", errors="replace").lower()
        pos += name_len
    return None

#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# NDEF framing for the URL we put on a tag.
#
# One record, TNF=well-known, type "U" (NFC Forum URI RTD), wrapped in the
# NDEF Message TLV that Type 2 tags (NTAG21x) expect in user memory:
#
#   03 <len> <ndef message> FE
#
import struct

from .constants import TAG_PAGE_SIZE
from .exceptions import ValidationError

# URI identifier codes, index is the code, see NFC Forum URI RTD 1.0 table 3
URI_PREFIXES = [
    '', 'http://www.', 'https://www.', 'http://', 'https://', 'tel:', 'mailto:',
    'ftp://anonymous:anonymous@', 'ftp://ftp.', 'ftps://', 'sftp://', 'smb://',
    'nfs://', 'ftp://', 'dav://', 'news:', 'telnet://', 'imap:', 'rtsp://', 'urn:',
    'pop:', 'sip:', 'sips:', 'tftp:', 'btspp://', 'btl2cap://', 'btgoep://',
    'tcpobex://', 'irdaobex://', 'file://', 'urn:epc:id:', 'urn:epc:tag:',
    'urn:epc:pat:', 'urn:epc:raw:', 'urn:epc:', 'urn:nfc:',
]

# record header bits
NDEF_MB = 0x80
NDEF_ME = 0x40
NDEF_SR = 0x10
NDEF_IL = 0x08
TNF_WELL_KNOWN = 0x01

RTD_URI = b'U'

# TLV tags in Type 2 tag memory
TLV_NULL = 0x00
TLV_NDEF = 0x03
TLV_TERMINATOR = 0xFE

def compress_uri(url):
    # longest matching well-known prefix => (code, remainder)
    best = 0
    for code, prefix in enumerate(URI_PREFIXES):
        if prefix and url.startswith(prefix) and len(prefix) > len(URI_PREFIXES[best]):
            best = code
    return best, url[len(URI_PREFIXES[best]):]

def encode_uri_record(url):
    # single-record NDEF message holding url
    code, rest = compress_uri(url)
    payload = bytes([code]) + rest.encode('utf-8')

    if len(payload) < 256:
        hdr = struct.pack('BBB', NDEF_MB | NDEF_ME | NDEF_SR | TNF_WELL_KNOWN,
                                len(RTD_URI), len(payload))
    else:
        hdr = struct.pack('>BBI', NDEF_MB | NDEF_ME | TNF_WELL_KNOWN, len(RTD_URI), len(payload))

    return hdr + RTD_URI + payload

def decode_uri_record(msg):
    # reverse of encode_uri_record; first record must be a URI record
    try:
        flags, type_len = msg[0], msg[1]
        pos = 2
        if flags & NDEF_SR:
            plen = msg[pos]
            pos += 1
        else:
            plen, = struct.unpack('>I', msg[pos:pos+4])
            pos += 4
        id_len = 0
        if flags & NDEF_IL:
            id_len = msg[pos]
            pos += 1
    except (IndexError, struct.error):
        raise ValidationError("truncated NDEF record")

    rtype = msg[pos:pos+type_len]
    pos += type_len + id_len
    payload = msg[pos:pos+plen]

    if (flags & 0x07) != TNF_WELL_KNOWN or rtype != RTD_URI:
        raise ValidationError("NDEF record is not a URI")
    if len(payload) != plen or not payload:
        raise ValidationError("truncated NDEF payload")
    if payload[0] >= len(URI_PREFIXES):
        raise ValidationError(f"unknown URI prefix code 0x{payload[0]:02x}")

    try:
        return URI_PREFIXES[payload[0]] + payload[1:].decode('utf-8')
    except UnicodeDecodeError:
        raise ValidationError("URI is not UTF-8")

def tlv_wrap(ndef):
    # NDEF message TLV plus terminator, padded to whole tag pages
    if len(ndef) < 0xFF:
        rv = bytes([TLV_NDEF, len(ndef)])
    else:
        rv = bytes([TLV_NDEF, 0xFF]) + struct.pack('>H', len(ndef))
    rv += ndef + bytes([TLV_TERMINATOR])

    if len(rv) % TAG_PAGE_SIZE:
        rv += bytes(TAG_PAGE_SIZE - (len(rv) % TAG_PAGE_SIZE))

    return rv

def tlv_unwrap(raw):
    # find the NDEF message TLV in tag user memory and return its value
    pos = 0
    while pos < len(raw):
        tag = raw[pos]
        if tag == TLV_NULL:
            pos += 1
            continue
        if tag == TLV_TERMINATOR:
            break

        if pos + 1 >= len(raw):
            break
        ln = raw[pos+1]
        pos += 2
        if ln == 0xFF:
            if pos + 2 > len(raw):
                raise ValidationError("truncated TLV length")
            ln, = struct.unpack('>H', raw[pos:pos+2])
            pos += 2

        if tag == TLV_NDEF:
            if pos + ln > len(raw):
                raise ValidationError("NDEF TLV runs past end of memory")
            return raw[pos:pos+ln]

        # lock control, memory control, proprietary: skip over
        pos += ln

    raise ValidationError("no NDEF message on tag")

def tag_image(url):
    # bytes to write starting at the first user page
    return tlv_wrap(encode_uri_record(url))

# EOF

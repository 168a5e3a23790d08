# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# transport.py
#
# Getting bytes onto a tag. The registry only knows TagWriterABC; real
# hardware (USB PC/SC reader) and an in-memory emulation are provided here.
#
import asyncio, threading
from binascii import b2a_hex

from .constants import *
from .exceptions import KairosError, TagTimeout
from .utils import normalize_chip_uid, pick_nonce

# Change this to see traffic details
VERBOSE = False

def _trace(msg):
    if VERBOSE:
        print(msg)

def find_writers():
    #
    # Search all connected card readers, and find all tags that are present.
    #
    # - generator function.
    #
    from smartcard.System import readers as get_readers
    from smartcard.Exceptions import CardConnectionException, NoCardException

    readers = get_readers()
    if not readers:
        raise RuntimeError("No USB card readers found. Need at least one.")

    for r in readers:
        conn = r.createConnection()
        try:
            conn.connect()
        except (CardConnectionException, NoCardException):
            _trace(f"Empty reader: {r}")
            continue

        yield PCSCTagWriter(conn, name=str(r))

def find_first():
    # operate on the first tag we can find
    for w in find_writers():
        return w

    return None

async def read_tag_uid(writer, timeout=WRITE_TIMEOUT):
    # UID of the tag in front of the writer, canonical form
    try:
        uid = await asyncio.wait_for(writer.read_uid(), timeout)
    except asyncio.TimeoutError:
        raise TagTimeout(f"no tag answered within {timeout} seconds",
                            hint="place a tag on the reader")
    return normalize_chip_uid(uid)

async def write_tag(writer, data, timeout=WRITE_TIMEOUT, retries=1, backoff=RETRY_BACKOFF):
    # Write with a deadline. A timed-out attempt is tried once more after a pause.
    # - raises TagTimeout, or KairosError if the tag refused the write
    # - with PCSCTagWriter, a timed-out attempt keeps running in its thread and may
    #   still complete; the retry waits for it, since the writer serializes access
    for attempt in range(retries + 1):
        try:
            ok = await asyncio.wait_for(writer.write(data), timeout)
        except asyncio.TimeoutError:
            _trace(f"!! write timeout after {timeout}s (attempt {attempt+1})")
            if attempt < retries:
                await asyncio.sleep(backoff * (attempt + 1))
                continue
            raise TagTimeout(f"tag write took more than {timeout} seconds",
                                hint="hold the tag still on the reader and try again")

        if not ok:
            raise KairosError(f"tag refused write of {len(data)} bytes",
                                hint="tag may be locked, or too small")
        return


class TagWriterABC:
    #
    # Abstract base class. Low level details about talking to one tag.
    #
    name = 'abstract'

    async def read_uid(self):
        # hardware UID, as hex string
        raise NotImplementedError

    async def write(self, data):
        # write bytes from first user page, True if the tag accepted all of it
        raise NotImplementedError

    async def read(self, length):
        # read bytes back from first user page
        raise NotImplementedError

    def close(self):
        # release resources
        pass

class EmulatedTag(TagWriterABC):
    #
    # NTAG-like tag in memory. Can be told to be slow or broken.
    #
    name = 'emulator'

    def __init__(self, chip=DEFAULT_CHIP, uid=None, delay=0, fail=False):
        self.chip = chip
        self.capacity = TAG_USER_MEMORY[chip]
        self.uid = normalize_chip_uid(uid or ('04' + b2a_hex(pick_nonce(6)).decode()))
        self.delay = delay
        self.fail = fail
        self.memory = bytearray(self.capacity)
        self.write_count = 0

    def __repr__(self):
        return '<%s %s %s>' % (self.__class__.__name__, CHIP_MODELS[self.chip], self.uid)

    async def read_uid(self):
        return self.uid

    async def write(self, data):
        self.write_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail or len(data) > self.capacity:
            return False

        _trace(f">> write {len(data)} bytes to {self.uid}")
        self.memory[0:len(data)] = data
        return True

    async def read(self, length):
        return bytes(self.memory[0:length])

class PCSCTagWriter(TagWriterABC):
    #
    # For talking to a real tag over USB to a reader.
    # - blocking pyscard calls are pushed to the default executor
    # - one multi-APDU operation at a time on the card, even if the
    #   coroutine that started it was cancelled by a timeout
    #

    def __init__(self, card_conn, name='pcsc'):
        self._conn = card_conn
        self.name = name
        self._lock = threading.Lock()

    def close(self):
        # release resources
        self._conn.disconnect()
        del self._conn

    def _apdu(self, lst):
        _trace('>> ' + b2a_hex(bytes(lst)).decode())
        resp, sw1, sw2 = self._conn.transmit(list(lst))
        resp = bytes(resp)
        _trace('<< %02x%02x %s' % (sw1, sw2, b2a_hex(resp).decode()))
        return ((sw1 << 8) | sw2), resp

    async def _call(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def _read_uid(self):
        with self._lock:
            sw, resp = self._apdu(PCSC_GET_UID)
        if sw != SW_OKAY:
            raise KairosError("reader could not get tag UID: 0x%04x" % sw)
        return normalize_chip_uid(resp.hex())

    async def read_uid(self):
        return await self._call(self._read_uid)

    def _write_pages(self, data):
        assert len(data) % TAG_PAGE_SIZE == 0
        with self._lock:
            for n in range(0, len(data), TAG_PAGE_SIZE):
                page = TAG_FIRST_USER_PAGE + n // TAG_PAGE_SIZE
                sw, _ = self._apdu([0xFF, PCSC_UPDATE_BINARY, 0x00, page, TAG_PAGE_SIZE]
                                        + list(data[n:n+TAG_PAGE_SIZE]))
                if sw != SW_OKAY:
                    return False
        return True

    async def write(self, data):
        if len(data) % TAG_PAGE_SIZE:
            data = bytes(data) + bytes(TAG_PAGE_SIZE - (len(data) % TAG_PAGE_SIZE))
        return await self._call(self._write_pages, data)

    def _read_pages(self, length):
        # READ returns four pages (16 bytes) at a time
        rv = b''
        page = TAG_FIRST_USER_PAGE
        with self._lock:
            while len(rv) < length:
                sw, resp = self._apdu([0xFF, PCSC_READ_BINARY, 0x00, page, 16])
                if sw != SW_OKAY:
                    raise KairosError("tag read failed: 0x%04x" % sw)
                rv += resp
                page += 4
        return rv[0:length]

    async def read(self, length):
        return await self._call(self._read_pages, length)

# EOF

#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# store.py
#
# Local key/value persistence. Records are opaque bytes (we store CBOR).
# The master seed lives here and nowhere else; nothing in this file talks to
# a network.
#
import os, re, tempfile

from .exceptions import StorageUnavailable, ValidationError

_KEY_RE = re.compile(r'^[A-Za-z0-9_.\-]+$')

def _check_key(key):
    if not isinstance(key, str) or not _KEY_RE.match(key) or key.startswith('.'):
        raise ValidationError(f"bad storage key: {key!r}")
    return key

class KVStoreABC:
    #
    # Abstract base class. Get/set/remove bytes by string key.
    #

    def get(self, key):
        # returns bytes, or None if never set
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def remove(self, key):
        # no error if missing
        raise NotImplementedError

class MemoryStore(KVStoreABC):
    #
    # Lives only as long as the process. Tests and throw-away identities.
    #

    def __init__(self):
        self._data = dict()

    def get(self, key):
        return self._data.get(_check_key(key))

    def set(self, key, value):
        assert isinstance(value, (bytes, bytearray))
        self._data[_check_key(key)] = bytes(value)

    def remove(self, key):
        self._data.pop(_check_key(key), None)

class FileStore(KVStoreABC):
    #
    # One file per key in a private directory. Writes are atomic (rename).
    #

    def __init__(self, directory):
        self.directory = os.path.expanduser(directory)

    def _path(self, key):
        return os.path.join(self.directory, _check_key(key))

    def _ensure_dir(self):
        try:
            os.makedirs(self.directory, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"cannot create {self.directory}: {exc.strerror}",
                                        hint="check --store path and permissions")

    def get(self, key):
        try:
            with open(self._path(key), 'rb') as fd:
                return fd.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageUnavailable(f"cannot read {key}: {exc.strerror}")

    def set(self, key, value):
        assert isinstance(value, (bytes, bytearray))
        self._ensure_dir()

        fd, tmp = None, None
        try:
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix='.tmp-')
            with os.fdopen(fd, 'wb') as f:
                fd = None
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path(key))
            tmp = None
        except OSError as exc:
            raise StorageUnavailable(f"cannot write {key}: {exc.strerror}",
                                        hint="nothing was changed; retry once")
        finally:
            if fd is not None:
                os.close(fd)
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)

    def remove(self, key):
        try:
            os.unlink(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageUnavailable(f"cannot remove {key}: {exc.strerror}")

# EOF

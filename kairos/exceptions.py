#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Exceptions
#

class KairosError(RuntimeError):
    # message for humans, plus an optional suggestion of what to do about it
    def __init__(self, msg, hint=None):
        self.hint = hint
        self.raw_msg = msg
        super().__init__(f'{msg} ({hint})' if hint else msg)

class ValidationError(KairosError, ValueError):
    # malformed DID, signature, key, shape or empty input
    pass

class CryptographicMismatch(KairosError):
    # tamper or wrong key; core functions return False instead of raising this
    pass

class CapacityExceeded(KairosError):
    # no wire format fits the chip without shortening crypto fields
    pass

class StorageUnavailable(KairosError):
    # local persistence can't be reached
    pass

class TagTimeout(KairosError, TimeoutError):
    # hardware write took too long
    pass

# EOF

#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# replay.py
#
# Time-bound challenges for local authentication, and memory of the ones
# already answered.
#
#   KairOS-Local-<deviceId>-<epoch ms>-<32 hex nonce>
#
# A challenge is good once, and only for max_age seconds after it was made.
# Optionally, a RateLimiter caps how often each device may be asked.
#
import re
from binascii import b2a_hex

from .constants import CHALLENGE_MAX_AGE, RATE_WINDOW, RATE_MAX_REQUESTS, RATE_DEBOUNCE
from .utils import now_ms, pick_nonce

CHALLENGE_PREFIX = 'KairOS-Local-'

_CHALLENGE_RE = re.compile(r'^KairOS-Local-(?P<device_id>[A-Za-z0-9_\-]+)'
                            r'-(?P<ms>[0-9]{1,15})-(?P<nonce>[0-9a-f]{32})$')

def parse_challenge(challenge):
    # (device_id, epoch ms, nonce) or None if it isn't one of ours
    m = _CHALLENGE_RE.match(challenge) if isinstance(challenge, str) else None
    if not m:
        return None
    return m.group('device_id'), int(m.group('ms')), m.group('nonce')


class RateLimiter:
    #
    # Sliding window per origin (a device id, a host name ... any string), plus
    # a minimum gap between two requests from the same origin.
    # - clock: callable returning epoch milliseconds, for tests
    #

    def __init__(self, window=RATE_WINDOW, max_requests=RATE_MAX_REQUESTS,
                        debounce=RATE_DEBOUNCE, clock=now_ms):
        self.window_ms = int(window * 1000)
        self.max_requests = max_requests
        self.debounce_ms = int(debounce * 1000)
        self.clock = clock
        self._hits = dict()         # origin => [epoch ms, ...] oldest first

    def __len__(self):
        return len(self._hits)

    def _recent(self, origin, now):
        hits = [ms for ms in self._hits.get(origin, []) if now - ms < self.window_ms]
        if hits:
            self._hits[origin] = hits
        else:
            self._hits.pop(origin, None)
        return hits

    def allow(self, origin):
        # True and counts the request, or False and counts nothing
        now = self.clock()
        self.cleanup()
        hits = self._recent(origin, now)

        if hits and now - hits[-1] < self.debounce_ms:
            return False
        if len(hits) >= self.max_requests:
            print(f"WARNING: rate limit hit for {origin}")
            return False

        self._hits.setdefault(origin, []).append(now)
        return True

    def status(self, origin):
        # dict(allowed, remaining, reset_at); reset_at is epoch ms when the oldest hit expires
        now = self.clock()
        hits = self._recent(origin, now)
        remaining = max(0, self.max_requests - len(hits))
        debounced = bool(hits) and now - hits[-1] < self.debounce_ms

        return dict(allowed=bool(remaining) and not debounced, remaining=remaining,
                    reset_at=(hits[0] + self.window_ms) if hits else now)

    def cleanup(self):
        # forget origins with nothing left in the window; returns count
        now = self.clock()
        old = [o for o, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_ms]
        for o in old:
            del self._hits[o]
        return len(old)


class ChallengeGuard:
    #
    # Not thread-safe; one per event loop / process is the expected use.
    # - clock: callable returning epoch milliseconds, for tests
    # - limiter: optional RateLimiter, consulted per device id
    #

    def __init__(self, max_age=CHALLENGE_MAX_AGE, clock=now_ms, limiter=None):
        self.max_age_ms = int(max_age * 1000)
        self.clock = clock
        self.limiter = limiter
        self._seen = dict()         # nonce => timestamp of its challenge

    def __len__(self):
        return len(self._seen)

    def make_challenge(self, device_id):
        nonce = b2a_hex(pick_nonce(16)).decode('ascii')
        return f'{CHALLENGE_PREFIX}{device_id}-{self.clock()}-{nonce}'

    def check(self, challenge, device_id=None):
        # True, exactly once, for a fresh well-formed challenge. Never raises.
        self.forget_expired()

        parts = parse_challenge(challenge)
        if parts is None:
            return False

        dev, ms, nonce = parts
        if device_id is not None and dev != device_id:
            return False

        now = self.clock()
        if ms > now:
            print(f"WARNING: challenge from the future: {challenge}")
            return False
        if now - ms > self.max_age_ms:
            return False
        if nonce in self._seen:
            print(f"WARNING: replayed challenge for {dev}")
            return False
        if self.limiter is not None and not self.limiter.allow(dev):
            return False

        self._seen[nonce] = ms
        return True

    def forget_expired(self):
        # drop nonces whose challenges can no longer pass anyway; returns count
        cutoff = self.clock() - self.max_age_ms
        old = [n for n, ms in self._seen.items() if ms < cutoff]
        for n in old:
            del self._seen[n]
        return len(old)

# EOF

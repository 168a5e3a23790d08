#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Challenge freshness and replay.
#
import pytest, re

from kairos.replay import ChallengeGuard, RateLimiter, parse_challenge

class FakeClock:
    def __init__(self, now=1750000000000):
        self.now = now
    def __call__(self):
        return self.now

@pytest.fixture
def clock():
    return FakeClock()

def test_make(clock):
    g = ChallengeGuard(clock=clock)
    ch = g.make_challenge('pendant-0a1b2c3d4e5f')

    assert re.match(r'^KairOS-Local-pendant-0a1b2c3d4e5f-1750000000000-[0-9a-f]{32}$', ch)
    assert parse_challenge(ch) == ('pendant-0a1b2c3d4e5f', 1750000000000, ch[-32:])
    assert g.make_challenge('x') != g.make_challenge('x')

def test_once_only(clock):
    g = ChallengeGuard(clock=clock)
    ch = g.make_challenge('dev-1')

    assert g.check(ch)
    assert not g.check(ch)
    assert len(g) == 1

def test_device_must_match(clock):
    g = ChallengeGuard(clock=clock)
    ch = g.make_challenge('dev-1')
    assert not g.check(ch, device_id='dev-2')
    assert g.check(ch, device_id='dev-1')

@pytest.mark.parametrize('age,ok', [
    (0, True),
    (60000, True),
    (60001, False),
    (-1, False),            # from the future
])
def test_age(clock, age, ok):
    g = ChallengeGuard(max_age=60, clock=clock)
    ch = g.make_challenge('dev-1')
    clock.now += age
    assert g.check(ch) == ok

@pytest.mark.parametrize('ch', [
    None, '', 'hello', 'KairOS-Local-dev-1-123',
    'KairOS-Local-dev-1-123-' + 'A'*32,
    'KairOS-Local--123-' + 'a'*32,
    'KairOS-Tag-04:AB:CD:EF',
])
def test_malformed(clock, ch):
    assert not ChallengeGuard(clock=clock).check(ch)

def test_forget_expired(clock):
    g = ChallengeGuard(max_age=60, clock=clock)
    old = g.make_challenge('dev-1')
    assert g.check(old)

    clock.now += 30000
    new = g.make_challenge('dev-1')
    assert g.check(new)

    clock.now += 31000
    assert g.forget_expired() == 1
    assert len(g) == 1

    # still refused, now because it is stale
    assert not g.check(old)
    assert not g.check(new)

def test_memory_stays_bounded(clock):
    # long-running guard: answered nonces are dropped once they can't pass anyway
    g = ChallengeGuard(max_age=60, clock=clock)
    for i in range(1000):
        assert g.check(g.make_challenge('dev-1'))
        clock.now += 61000
        assert len(g) <= 2

    assert len(g) <= 2

def test_rate_window(clock):
    lim = RateLimiter(window=60, max_requests=3, debounce=0, clock=clock)

    for i in range(3):
        assert lim.allow('dev-1')
        clock.now += 1000
    assert not lim.allow('dev-1')

    # other origins have their own budget
    assert lim.allow('dev-2')

    st = lim.status('dev-1')
    assert st['allowed'] is False
    assert st['remaining'] == 0
    assert st['reset_at'] == 1750000000000 + 60000

    # first hit falls out of the window
    clock.now = 1750000000000 + 60000
    assert lim.status('dev-1')['remaining'] == 1
    assert lim.allow('dev-1')

def test_rate_debounce(clock):
    lim = RateLimiter(window=60, max_requests=100, debounce=1, clock=clock)
    assert lim.allow('dev-1')
    clock.now += 999
    assert not lim.allow('dev-1')
    assert lim.status('dev-1')['allowed'] is False
    clock.now += 1
    assert lim.allow('dev-1')

    # refused requests were not counted
    assert lim.status('dev-1')['remaining'] == 98

def test_rate_cleanup(clock):
    lim = RateLimiter(window=60, clock=clock)
    for n in range(50):
        assert lim.allow(f'origin-{n}')
    assert len(lim) == 50

    clock.now += 60000
    assert lim.cleanup() == 50
    assert len(lim) == 0

def test_guard_with_limiter(clock):
    g = ChallengeGuard(clock=clock, limiter=RateLimiter(max_requests=2, debounce=0, clock=clock))

    assert g.check(g.make_challenge('dev-1'))
    assert g.check(g.make_challenge('dev-1'))
    ch = g.make_challenge('dev-1')
    assert not g.check(ch)

    # rate limited challenge was not burnt
    g.limiter = None
    assert g.check(ch)

# EOF

#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# System constants.
#

# multicodec varint for an Ed25519 public key (0xed), see did:key method
ED25519_MULTICODEC = bytes([0xed, 0x01])

# raw key and signature sizes (bytes)
PUBKEY_SIZE = 32
PRIVKEY_SIZE = 32
SIG_SIZE = 64

# never put shorter values than these on a tag (hex chars)
MIN_SIG_HEX = SIG_SIZE * 2
MIN_PUBKEY_HEX = PUBKEY_SIZE * 2

DID_PREFIX = 'did:key:z'
DID_PATTERN = r'^did:key:z[1-9A-HJ-NP-Za-km-z]+$'

# conservative usable URL bytes for each class of chip
# - ultra-small: NTAG213, medium: NTAG215, large: NTAG216, secure: NTAG424 DNA
CHIP_CAPACITY = {
    'ultra-small': 120,
    'medium': 450,
    'large': 850,
    'secure': 220,
}

CHIP_MODELS = {
    'ultra-small': 'NTAG213',
    'medium': 'NTAG215',
    'large': 'NTAG216',
    'secure': 'NTAG424 DNA',
}

DEFAULT_CHIP = 'ultra-small'

DEFAULT_BASE_URL = 'https://kair-os.vercel.app'

# tier names, in the order they are tried
TIER_FULL = 'full'
TIER_COMPACT = 'compact'
TIER_REFERENCE = 'reference'
ALL_TIERS = (TIER_FULL, TIER_COMPACT, TIER_REFERENCE)

# moments: allowed skew between moment timestamp and local clock (seconds)
MOMENT_TOLERANCE = 5 * 60

# seconds allowed for one NFC write attempt, and pause before the single retry
WRITE_TIMEOUT = 15
RETRY_BACKOFF = 0.5

# challenges older than this are refused by the replay guard (seconds)
CHALLENGE_MAX_AGE = 60

# device key derivation from master seed
MASTER_SEED_SIZE = 32
HKDF_SALT = b'KairOS-NFC-2025'
HKDF_INFO_PREFIX = 'KairOS-Device-'
DERIVATION_PATH = "m/44'/9999'/0'/{device_id}"

# random part of device ids (bytes, shown as hex)
DEVICE_ID_ENTROPY = 6

# threshold proofs: smallest "meaningful" count and the fixed milestones
MIN_THRESHOLD = 3
THRESHOLD_MILESTONES = [5, 10, 15, 20, 25, 30, 50]

# after the fixed milestones, keep going with 1-2.5-5 steps per decade
GEOMETRIC_STEPS = [1, 2.5, 5]

# key used with the key/value persistence provider
IDENTITY_STORAGE_KEY = 'kairos_identity'

# version of the record we persist
IDENTITY_RECORD_VERSION = 1

# revocation list entries are signed by a key derived under this name
REVOCATION_KEY_ID = 'revocation-authority'
REVOCATION_REASONS = ('lost', 'stolen', 'compromised', 'rotation')

# local rate limit: requests per window (seconds) per origin, and minimum gap
RATE_WINDOW = 60
RATE_MAX_REQUESTS = 100
RATE_DEBOUNCE = 1.0

# Type 2 tag memory layout (NTAG21x)
TAG_PAGE_SIZE = 4
TAG_FIRST_USER_PAGE = 4

# user memory (bytes) of the tag model behind each chip class
TAG_USER_MEMORY = {
    'ultra-small': 144,
    'medium': 504,
    'large': 888,
    'secure': 256,
}

# PC/SC pseudo-APDUs understood by common contactless readers (ACR122U and friends)
PCSC_GET_UID = [0xFF, 0xCA, 0x00, 0x00, 0x00]
PCSC_UPDATE_BINARY = 0xD6
PCSC_READ_BINARY = 0xB0

# Correct ADPU response: 90 00
SW_OKAY = 0x9000

# EOF

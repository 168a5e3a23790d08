#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#

__version__ = '1.0.0'

__all__ = [ 'constants', 'exceptions', 'utils', 'moment', 'proofs', 'nfc_url', 'ndef',
            'store', 'registry', 'transport', 'replay' ]

# identity keys and DIDs
from kairos.utils import generate_keypair, create_did

# local identity and its devices
from kairos.registry import IdentityStore, DeviceRegistry

# EOF

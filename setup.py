#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
#
# KairOS tap identity: keys, moments, proofs and NFC tags in Python
#
import re

# To use this command to install and yet be able to edit the code (here). Great for dev:
#
#   pip install --editable .
#
# with cli dependencies
#
#   pip install --editable '.[cli]'
#
# with test dependencies
#
#   pip install --editable '.[test]'
#
#
from setuptools import setup

# don't import the package here, it needs the requirements below
with open("kairos/__init__.py", "r") as fh:
    __version__ = re.search(r"^__version__ = '([^']+)'", fh.read(), re.M).group(1)

# these minimum versions are tested, some earlier values would probably work too.
requirements = [
    'cbor2>=5.4.1',
    'pyscard>=2.0.2',
    'base58>=2.1.1',
    'cryptography>=41.0.0',
]

# for servers that work w/ offline data and dont have NFC readers
offline_requirements = [r for r in requirements if 'pyscard' not in r]

cli_requirements = [
    'click>=8.0.3',
    'pyqrcode>=1.2.1',
    'pypng>=0.0.21',
]

test_requirements = [
    'pytest',
] + cli_requirements

# only for developers playing with crypto libraries - cross library comparisons
test_plus_requirements = [
    'pynacl>=1.5.0',
] + test_requirements

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='kairos-tap-identity',
    version=__version__,
    packages=[ 'kairos' ],
    python_requires='>=3.10',
    install_requires=requirements,
    extras_require={
        'cli': cli_requirements,
        'test': test_requirements,
        'test_plus': test_plus_requirements,
        'offline': offline_requirements,
    },
    description="Self-sovereign Ed25519 identity for NFC pendants: DIDs, moments, proofs and tags",
    long_description=long_description,
    long_description_content_type="text/markdown",
    entry_points='''
        [console_scripts]
        kairos=kairos.cli:main
    ''',
    classifiers=[
        'Operating System :: POSIX :: Linux',
        'Operating System :: Microsoft :: Windows',
        'Operating System :: MacOS :: MacOS X',
    ],
)

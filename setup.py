#!/usr/bin/env python3

import os
import re
from setuptools import setup


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


def find_version(source):
    version_file = read(source)
    version_match = re.search(r"^__VERSION__ = ['\"]([^'\"]*)['\"]", version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


NAME = 'keycanon'

setup(
    version=find_version('src/keycanon/__init__.py'),
    name=NAME,
    description='Canonicalize, merge and import OpenPGP keyrings',
    packages=['keycanon'],
    package_dir={'': 'src'},
    license='MIT-0',
    long_description=read('README.rst'),
    long_description_content_type='text/x-rst',
    keywords=['openpgp', 'keyring', 'canonicalization'],
    install_requires=[
        'pynacl',
        'cryptography',
    ],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.8',
    entry_points={
        'console_scripts': [
            'keycanon=keycanon:command'
        ],
    },
)

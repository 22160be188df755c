#!/usr/bin/env python3
"""Setup script for bloomer - Bloom filters with portable dict serialization."""
from setuptools import setup

VERSION = "1.0.0"
DESCRIPTION = "Bloom filter and scalable Bloom filter with dict serialization"
LONG_DESCRIPTION = """
A pure-Python Bloom filter built on bitarray and xxHash.

This module provides two implementations:
- BloomFilter: Fixed-capacity filter for known dataset sizes
- ScalableBloomFilter: Chain of filters that grows as each one saturates,
  doubling capacity and tightening the error budget by (ln 2)^2 per stage

Features:
- Triple hashing: one digest yields every bit index
- Serialization to plain dicts that survive JSON/YAML transport
- Compact binary serialization and pickling
- Set operations (union, intersection)
"""

CLASSIFIERS = [
    "Development Status :: 5 - Production/Stable",
    "Intended Audience :: Developers",
    "License :: OSI Approved :: MIT License",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Operating System :: OS Independent",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Topic :: Utilities",
]

setup(
    name="bloomer",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/plain",
    classifiers=CLASSIFIERS,
    keywords=[
        "bloom filter",
        "probabilistic",
        "data structures",
        "set membership",
        "scalable",
        "xxhash",
    ],
    license="MIT License",
    platforms=["any"],
    python_requires=">=3.7",
    install_requires=["bitarray>=2.0.0", "xxhash>=3.0.0"],
    extras_require={"test": ["pytest>=7.0.0"]},
    packages=["bloomer"],
    zip_safe=True,
)

#!/usr/bin/env python3
"""
Ghost Net Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme = Path(__file__).parent / "README.md"
long_description = readme.read_text(encoding="utf-8") if readme.exists() else ""

install_requires = [
    "cryptography>=42.0.0",
    "pydantic>=2.5.0",
    "msgpack>=1.0.7",
    "numpy>=1.26.0",
    "zstandard>=0.22.0",
    "lz4>=4.3.0",
    "brotli>=1.1.0",
]

setup(
    name="ghostnet",
    version="0.1.0",
    description="Signed peer-to-peer overlay with resonance-ranked routing and bounded transmission buffers",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*", "docs"]),
    python_requires=">=3.11",
    install_requires=install_requires,
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ghostnet-node=p2p.cli.node_cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
    ],
    keywords="p2p overlay ed25519 routing gossip asyncio",
)

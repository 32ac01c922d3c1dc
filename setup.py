#!/usr/bin/env python3
"""
Setup script for the obs-websocket remote-control client
"""

from setuptools import setup, find_namespace_packages

setup(
    name="obsws-remote",
    version="0.1.0",
    description="Client for the obs-websocket v5 remote-control protocol",
    packages=find_namespace_packages(include=["client", "client.*", "shared", "shared.*"]),
    install_requires=[
        "websockets==15.0",
        "cryptography==43.0.1",
        "click==8.1.7",
        "typer==0.12.3",
        "rich==13.9.2",
        "PyYAML==6.0.2",
    ],
    extras_require={
        "test": [
            "pytest==8.4.2",
            "pytest-asyncio==1.2.0",
        ],
    },
    python_requires=">=3.9",
    entry_points={
        'console_scripts': [
            'obsws=client.cli:app',
        ],
    },
)

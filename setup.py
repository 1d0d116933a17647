#!/usr/bin/env python3
"""
Setup script for the leader-avoiding Lamdera WebSocket client
"""

from setuptools import setup, find_namespace_packages

setup(
    name="lamdera-websocket",
    version="0.1.0",
    description="WebSocket client for Lamdera apps that steps away when elected leader",
    packages=find_namespace_packages(include=["lamdera_wire", "lamdera_client"]),
    install_requires=[
        "websockets>=15.0",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.4.2",
            "pytest-asyncio>=1.2.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'lamdera-ws=lamdera_client.cli:main',
        ],
    },
)

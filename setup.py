#!/usr/bin/env python3
"""
Setup script for the DogeHouse socket client
"""

from setuptools import setup, find_namespace_packages

setup(
    name="dogehouse-client",
    version="0.1.0",
    description="Authenticated DogeHouse websocket client: heartbeat, listeners and fetch correlation",
    packages=find_namespace_packages(include=["dogehouse_client*", "dogehouse_shared*"]),
    install_requires=[
        "websockets>=15.0",
        "click>=8.1.7",
        "typer>=0.12.3",
        "rich>=13.9.2",
        "aioconsole>=0.8.1",
        "PyYAML>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        'console_scripts': [
            'dogehouse=dogehouse_client.cli:app',
        ],
    },
)

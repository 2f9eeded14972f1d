#!/usr/bin/env python3
"""
Setup script for push-deployer.
Installs the deployment pipeline, the trigger gateway and the CLI.
"""

from setuptools import setup, find_packages

setup(
    name="push-deployer",
    version="1.0.0",
    description="Push-triggered container deployment with automatic rollback",
    python_requires=">=3.9",
    packages=find_packages(include=["push_deployer", "push_deployer.*"]),
    install_requires=[
        "fastapi>=0.100",
        "uvicorn>=0.22",
        "pydantic>=2.0",
        "docker>=6.1",
        "PyYAML>=6.0",
        "aiofiles>=23.1",
        "slowapi>=0.1.8",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "push-deployer=push_deployer.__main__:main",
        ],
    },
)

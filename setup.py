#!/usr/bin/env python3
"""
Setup script for rollout-manager.
Installs the orchestrator package and the rollout-manager console script.
"""

from setuptools import setup, find_packages

setup(
    name="rollout-manager",
    version="1.0.0",
    description="Zero-downtime rolling deployments with health gates, rollback and backups",
    python_requires=">=3.10",
    packages=find_packages(include=["rollout_manager", "rollout_manager.*"]),
    install_requires=[
        "pydantic>=2.0",
        "PyYAML>=6.0",
        "aiofiles>=23.0",
        "httpx>=0.25",
        "websockets>=12.0",
        "kubernetes>=28.1",
        "boto3>=1.28",
        "tabulate>=0.9",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "rollout-manager=rollout_manager.__main__:main",
        ],
    },
)

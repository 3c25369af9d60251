#!/usr/bin/env python
"""Setup configuration for DRMS Offline Sync."""

from setuptools import find_packages, setup

setup(
    name="drms-sync",
    version="0.1.0",
    description="Offline-first sync queue and conflict resolution for DRMS field devices",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",
        "pydantic>=2.5.0",
        "sqlalchemy>=2.0.23",
        "httpx>=0.25.0",
        "tenacity>=8.2.0",
        "pydantic-settings>=2.0.0",
        "structlog>=23.2.0",
        "python-dateutil>=2.8.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "drms-sync=drms_sync.app:main",
        ],
    },
)

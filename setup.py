#!/usr/bin/env python3
"""
Setup configuration for the Click-to-Offer Pipeline
"""

from setuptools import setup, find_packages

# Read the contents of README file
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name="adrec",
    version="1.0.0",
    author="Click-to-Offer Pipeline Team",
    description="Real-time scoring of clickstream events into offer notifications, with a gzip archive for retraining",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "examples*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
    ],
    python_requires=">=3.10",
    install_requires=[
        # Streaming & Event Processing
        "confluent-kafka>=2.2.0",
        "redis>=5.0.1",

        # Serving & Scoring Client
        "fastapi>=0.100.0",
        "uvicorn[standard]>=0.23.0",
        "aiohttp>=3.8.0",

        # Caching & Performance
        "cachetools>=5.3.0",
        "orjson>=3.9.0",

        # Monitoring & Observability
        "prometheus-client>=0.17.0",

        # Utilities
        "pydantic>=2.0.0",
        "tenacity>=8.2.0",
        "aiofiles>=23.1.0",

        # Configuration
        "pyyaml>=6.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "hypothesis>=6.82.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "adrec-server=adrec.serving.api:main",
        ],
    },
    zip_safe=False,
    keywords="clickstream real-time scoring notifications streaming archive",
)

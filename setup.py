#!/usr/bin/env python3
"""
Setup configuration for the BrokerBridge backend package
"""

from setuptools import setup, find_packages

setup(
    name="brokerbridge-backend",
    version="1.0.0",
    description="BrokerBridge broker connection, ingestion and position aggregation backend",
    packages=find_packages(exclude=["tests", "tests.*", "scripts", "scripts.*"]),
    python_requires=">=3.8",
    install_requires=[
        "aiohttp>=3.9.0",
        "cryptography>=41.0.0",
        "fastapi>=0.110.0",
        "pydantic>=2.0.0",
        "python-dotenv>=1.0.0",
        "supabase>=2.0.0",
        "uvicorn>=0.27.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.10.0",
            "httpx>=0.25.0",
        ],
    },
)

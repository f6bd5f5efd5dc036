from setuptools import find_packages, setup

setup(
    name="chain_swap_client",
    version="0.1.0",
    description="Atomic chain swap client with cooperative MuSig2 Taproot claims",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "structlog>=23.0.0",
        "httpx>=0.24.0",
        "websockets>=11.0.0",
        "aiohttp>=3.8.0",
        "python-bitcoinlib>=0.12.0",
        "coincurve>=20.0.0",
        "embit>=0.8.0",
        "click>=8.1.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chain-swap=chain_swap_client.cli:main",
        ],
    },
)

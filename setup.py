from setuptools import find_packages, setup

setup(
    name="ci-node-aggregator",
    version="0.1.0",
    packages=find_packages(
        include=[
            "agg_common",
            "agg_common.*",
            "agg_persistence",
            "agg_persistence.*",
            "agg_adapters",
            "agg_adapters.*",
            "agg_engine",
            "agg_engine.*",
            "agg_server",
            "agg_server.*",
            "agg_admin",
            "agg_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "pydantic>=2.0",
        "uvicorn>=0.24.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agg-server=agg_server.__main__:main",
            "agg-admin=agg_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)

from setuptools import setup, find_packages

setup(
    name="fiscal_core",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "fastapi",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg",
        "pydantic>=2",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
            "aiosqlite",
        ],
    },
)

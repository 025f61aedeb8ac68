from setuptools import setup, find_packages

setup(
    name="studygate",
    version="0.1.0",
    packages=find_packages(include=["studygate", "studygate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "pydantic-settings>=2.3",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg",
        "aiosqlite",
        "httpx",
        "redis>=5",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ],
    },
)

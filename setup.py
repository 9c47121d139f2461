from setuptools import setup, find_namespace_packages

setup(
    name="resiliencehub-realtime",
    version="0.1.0",
    packages=find_namespace_packages(include=["resilience", "resilience.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "httpx",
        "itsdangerous",
        "pydantic>=2",
        "pydantic-settings",
        "uvicorn[standard]>=0.30",
        "websockets>=13",
    ],
    entry_points={
        "console_scripts": [
            "resilience-hub=resilience.app.main:run",
        ],
    },
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
)

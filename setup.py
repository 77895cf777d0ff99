"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="local-llm-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "click>=8.0",
        "fastapi>=0.110",
        "httpx>=0.27",
        "opentelemetry-instrumentation-fastapi",
        "prometheus-client",
        "pydantic>=2.0",
        "structlog",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "local-llm-chat=local_llm_chat.__main__:main",
        ],
    },
)

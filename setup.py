from setuptools import setup, find_packages

setup(
    name="abuseshield",
    version="0.1.0",
    packages=find_packages(include=["shield", "shield.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "pydantic",
        "pydantic-settings",
        "redis>=5",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)

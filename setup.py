"""Setup configuration for the puzzle-forge package."""

from setuptools import find_packages, setup

setup(
    name="puzzle-forge",
    version="0.1.0",
    packages=find_packages(include=["puzzle_forge", "puzzle_forge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "python-multipart",
        "pillow",
        "numpy",
        "pydantic",
        "pydantic-settings",
        "tenacity",
        "azure-storage-blob",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-cov",
            "httpx",
            "black",
            "flake8",
            "mypy",
            "isort",
        ],
    },
)

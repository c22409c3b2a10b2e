from setuptools import find_packages, setup

setup(
    name="ciflow",
    version="1.0.0",
    packages=find_packages(include=["ciflow", "ciflow.*"]),
    install_requires=[line for line in open("requirements-core.txt").read().splitlines() if line],
    extras_require={
        "test": ["pytest>=7", "pytest-asyncio>=0.21"],
    },
    python_requires=">=3.9",
)

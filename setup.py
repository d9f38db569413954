"""Setup script for the PS Orchestrator."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="ps-orchestrator",
    version="0.2.0",
    author="Your Name",
    author_email="your.email@example.com",
    description="Control plane for parameter-server training clusters",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/ps-orchestrator",
    packages=find_packages(include=["ps_orchestrator", "ps_orchestrator.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: System :: Distributed Computing",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.20.0",
        "pyarrow>=8.0.0",
        "msgpack>=1.0.0",
        "boto3>=1.20.0",
    ],
    extras_require={
        "compression": [
            "lz4>=4.0.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
        ],
        "all": [
            "lz4>=4.0.0",
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ps-orchestrator-example=ps_orchestrator.examples.simple_training:main",
        ],
    },
)

"""
Setup script for the CloudPRNT Print Queue

A print job queue and ESC/POS receipt encoder for thermal printers that poll
their server using the Star CloudPRNT protocol.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    CloudPRNT Print Queue

    Idempotent print job queue with CloudPRNT poll delivery, bounded retries,
    an append-only job log and an ESC/POS receipt encoder.
    """

setup(
    name="cloudprnt-job-queue",
    version="1.0.0",
    description="CloudPRNT print job queue and ESC/POS receipt encoder",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Framework :: AsyncIO",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Printing",
        "Topic :: Office/Business :: Financial :: Point-Of-Sale",
    ],
    keywords="cloudprnt, escpos, receipt printer, print queue, point of sale, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "typing-extensions>=4.0.0",

        # HTTP server and printer simulation client
        "fastapi>=0.100.0",
        "uvicorn>=0.20.0",
        "httpx>=0.24.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cloudprnt-queue=cloudprnt_queue.cli.main:main",
        ],
    },
)

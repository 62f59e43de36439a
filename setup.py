from pathlib import Path
from setuptools import setup


ROOT = Path(__file__).parent


def read_version():
    """Read ``__version__`` from the package without importing it."""
    for line in (ROOT / "rox_localnet" / "__init__.py").read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("__version__ not found")


setup(
    name="rox-localnet",
    version=read_version(),
    description="Bootstrap and supervise a local ROX validator network",
    packages=["rox_localnet"],
    python_requires=">=3.11",
    install_requires=[
        "psutil>=5.9",
        "pydantic>=2.5",
        "requests>=2.31",
        "solders>=0.18",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": ["rox-localnet=rox_localnet.bootstrap:main"],
    },
)

"""Set up the vaultsync package."""
import json
from pathlib import Path

from setuptools import find_packages, setup

DESCRIPTION = (
    "Sync a notes vault with an S3 bucket through git history,"
    " offloading large binaries to content-addressed objects."
)

REQUIREMENTS = [
    "aiobotocore>=2.1.0",
    "botocore",
    "aiofiles",
    "pydantic>=2.6.1",
    "typing-extensions>=3.7.4.3",  # required by pydantic
    "python-dotenv>=0.19.0",
]

ROOT_DIR = Path(__file__).parent.resolve()
README_FILE = ROOT_DIR / "README.md"
LONG_DESCRIPTION = README_FILE.read_text(encoding="utf-8")
VERSION_FILE = ROOT_DIR / "vaultsync" / "VERSION"
VERSION = json.loads(VERSION_FILE.read_text(encoding="utf-8"))["version"]


setup(
    name="vaultsync",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    include_package_data=True,
    package_data={"vaultsync": ["VERSION"]},
    install_requires=REQUIREMENTS,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    zip_safe=False,
    entry_points={"console_scripts": ["vaultsync = vaultsync.__main__:main"]},
)

"""
Setup file.
"""

import re
from pathlib import Path

from setuptools import find_packages, setup

KEYWORDS = "subprocess pipes process stdin stdout stderr timeout"
HERE = Path(__file__).parent
VERSION = re.search(
    r'^__version__ = "([^"]+)"',
    (HERE / "src" / "piped_process" / "__init__.py").read_text(encoding="utf-8"),
    re.MULTILINE,
).group(1)


if __name__ == "__main__":
    setup(
        name="piped-process",
        version=VERSION,
        description="Spawn a child process with piped standard streams and timeout-bounded reads and writes.",
        keywords=KEYWORDS,
        python_requires=">=3.10",
        package_dir={"": "src"},
        packages=find_packages(where="src"),
        install_requires=["psutil"],
        extras_require={"test": ["pytest"]},
        entry_points={"console_scripts": ["piped-process=piped_process.cli:main"]},
    )

"""
Code version reported by the API (OpenAPI version, /metrics app info).

Set CLIPSTREAM_CODE_VERSION during the image build, e.g.:
    docker build --build-arg CODE_VERSION=$(git rev-parse --short HEAD) ...
Local checkouts fall back to the current git commit, then to the package version.
"""

import os
import subprocess

PACKAGE_VERSION = "0.1.0"

# Short git commit hash, or "dev" for local development
CODE_VERSION = os.environ.get("CLIPSTREAM_CODE_VERSION", "dev")

if CODE_VERSION == "dev":
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0 and result.stdout.strip():
            CODE_VERSION = result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass  # Keep "dev" if git is unavailable


def get_version() -> str:
    """Package version, with the commit appended when known (e.g. 0.1.0+3f1c2ab)."""
    if CODE_VERSION and CODE_VERSION != "dev":
        return f"{PACKAGE_VERSION}+{CODE_VERSION}"
    return PACKAGE_VERSION


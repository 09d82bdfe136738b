"""Component version discovery for the startup handshake."""

import platform
from importlib import metadata

from apiwatch._version import __version__


def get_versions(*packages: str, app_version: str | None = None) -> dict[str, str]:
    """Versions of Python, apiwatch and any installed ``packages``.

    Packages that are not installed are left out.
    """
    versions = {
        "python": platform.python_version(),
        "apiwatch": __version__,
    }
    for name in packages:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            continue
    if app_version:
        versions["app"] = app_version
    return versions

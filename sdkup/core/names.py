"""Version-free display names for installed packages."""

REVISION_MARKER = ", rev"


def normalize_display_name(name: str, version: str) -> str:
    """Strip version text from a package display name.

    "Android SDK Build-Tools 33.0.2" with version "33.0.2" becomes
    "Android SDK Build-Tools"; "Android SDK Tools, rev 26.1.1" becomes
    "Android SDK Tools".

    Best effort only: when no marker is found the name is returned as is.
    """
    if not name:
        return name or ""

    rev = name.find(REVISION_MARKER)
    if rev != -1:
        name = name[:rev]

    if not version:
        return name

    major, dot, _ = version.partition('.')
    if not dot or not major.isdigit():
        return name

    pos = name.find(major)
    if pos != -1:
        name = name[:pos].rstrip()
    return name

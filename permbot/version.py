from __future__ import annotations

import os

from permbot import __version__


def version() -> str:
    """
    Version string stamped onto every generated object.

    Release images set PERMBOT_VERSION at build time; local checkouts fall back to the package version.
    """
    v = (os.getenv("PERMBOT_VERSION") or "").strip()
    return v or __version__

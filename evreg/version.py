"""Version reporting for EVREG."""

from __future__ import annotations

import platform
from typing import Any, Dict

__version__ = "0.3.0"

# Revision of the identifier-derivation and record protocol. Changes only when
# identifiers derived by an older revision would no longer be reproduced.
PROTOCOL_VERSION = "evreg-protocol/1.1"


def protocol_version() -> str:
    """Return the protocol revision implemented by this package."""
    return PROTOCOL_VERSION


def get_version_info(variant: str = "") -> Dict[str, Any]:
    """Get version and build information."""
    info: Dict[str, Any] = {
        "version": __version__,
        "protocol_version": PROTOCOL_VERSION,
        "python_version": platform.python_version(),
    }
    if variant:
        info["variant"] = variant
    return info

"""
MoisSense Gateway - Version Constants

Semantic Versioning: MAJOR.MINOR.PATCH
- MAJOR: Breaking changes (remote API contract changes)
- MINOR: New features (backward compatible)
- PATCH: Bug fixes, small improvements
"""

# Version Components
MAJOR = 1
MINOR = 0
PATCH = 0

# Formatted Versions
VERSION = f"{MAJOR}.{MINOR}.{PATCH}"
FULL_VERSION = f"v{VERSION}"

# Release Info
RELEASE_NAME = "Optimistic Pump"

# Remote contract this gateway speaks (Node-RED flow on the field node)
REMOTE_API_ENDPOINTS = ("/api/latest", "/api/events", "/api/pump")


def get_version_info():
    """Version payload for the /status endpoint."""
    return {
        'version': VERSION,
        'full_version': FULL_VERSION,
        'release_name': RELEASE_NAME,
        'remote_api': list(REMOTE_API_ENDPOINTS),
    }

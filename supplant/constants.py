"""Shared constants for supplant.

Centralizes the run marker, default bind addresses, and the port ranges
used when validating configuration and allocating local ports.

WARNING: the run marker is the only state supplant persists in the cluster.
Changing MARKER_KEY or MARKER_VALUE means a later run can no longer find
endpoints orphaned by an older release.
"""

# Label (on endpoints) and annotation (on services) written on every object
# supplant creates or mutates.
MARKER_KEY: str = "supplant"
MARKER_VALUE: str = "true"
MARKER_SELECTOR: str = f"{MARKER_KEY}={MARKER_VALUE}"

# Address tunnels listen on unless overridden.
DEFAULT_LOCAL_IP: str = "127.0.0.1"

# Public address used only to pick the outbound interface; nothing is sent.
OUTBOUND_ROUTE_ADDRESS: tuple[str, int] = ("8.8.8.8", 80)

MIN_PORT: int = 1
MAX_PORT: int = 65535

# Ephemeral ports handed out by the OS are always above the privileged range.
MIN_USER_PORT: int = 1024

# Port forwarding is stream-only.
SUPPORTED_PROTOCOLS: list[str] = ["TCP"]

# Identity fields cleared before a service object is recreated.
IDENTITY_FIELDS: list[str] = ["resource_version", "uid", "creation_timestamp", "managed_fields", "self_link"]

import os
from typing import Optional


def env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


LOCALKUBE_HOST = env("LOCALKUBE_HOST", "0.0.0.0")
LOCALKUBE_PORT = int(env("LOCALKUBE_PORT", "8080"))
LOCALKUBE_NODE_NAME = env("LOCALKUBE_NODE_NAME", "localkube")

# -----------------------------
# Container engine
# -----------------------------
LOCALKUBE_DOCKER_BIN = env("LOCALKUBE_DOCKER_BIN", "docker")  # docker or podman
LOCALKUBE_DOCKER_TIMEOUT_SECONDS = int(env("LOCALKUBE_DOCKER_TIMEOUT_SECONDS", "120") or "120")
LOCALKUBE_DOCKER_NETWORK = env("LOCALKUBE_DOCKER_NETWORK", "")

# Image reference per application. Placeholders: {name}, {port}
LOCALKUBE_IMAGE_TEMPLATE = env("LOCALKUBE_IMAGE_TEMPLATE", "{name}") or "{name}"

# Optional command run through the OS shell before `docker run`, e.g. to build the image.
# Placeholders: {name}, {port}, {sep} (path separator of the host OS), {parent} (parent directory)
LOCALKUBE_BUILD_COMMAND = env("LOCALKUBE_BUILD_COMMAND", "")

# -----------------------------
# Service ports / controller
# -----------------------------
LOCALKUBE_SERVICE_PORT_MIN = int(env("LOCALKUBE_SERVICE_PORT_MIN", "49152"))
LOCALKUBE_SERVICE_PORT_MAX = int(env("LOCALKUBE_SERVICE_PORT_MAX", "65535"))
LOCALKUBE_PORT_ATTEMPTS = max(1, int(env("LOCALKUBE_PORT_ATTEMPTS", "3") or "3"))
# Deadline for every external call made by the controller (allocator, driver, listener).
LOCALKUBE_CALL_TIMEOUT_SECONDS = float(env("LOCALKUBE_CALL_TIMEOUT_SECONDS", "150") or "150")

# If true, containers labelled by this node and left over from a previous process are removed on startup.
LOCALKUBE_SWEEP_ORPHANS_ON_START = env("LOCALKUBE_SWEEP_ORPHANS_ON_START", "true").lower() != "false"

# -----------------------------
# Listeners (public application ports)
# -----------------------------
LOCALKUBE_LISTENER_HOST = env("LOCALKUBE_LISTENER_HOST", "0.0.0.0")
LOCALKUBE_LISTENER_START_TIMEOUT_SECONDS = float(env("LOCALKUBE_LISTENER_START_TIMEOUT_SECONDS", "5") or "5")
LOCALKUBE_PROXY_TIMEOUT_SECONDS = float(env("LOCALKUBE_PROXY_TIMEOUT_SECONDS", "30") or "30")

# -----------------------------
# Event log sink (optional MongoDB)
# -----------------------------
# If LOCALKUBE_MONGO_HOST is empty -> events are only written to the process log.
LOCALKUBE_MONGO_HOST = env("LOCALKUBE_MONGO_HOST", "")
LOCALKUBE_MONGO_PORT = int(env("LOCALKUBE_MONGO_PORT", "27017") or "27017")
LOCALKUBE_MONGO_USERNAME = env("LOCALKUBE_MONGO_USERNAME", "")
LOCALKUBE_MONGO_PASSWORD = env("LOCALKUBE_MONGO_PASSWORD", "")
LOCALKUBE_MONGO_AUTH_SOURCE = env("LOCALKUBE_MONGO_AUTH_SOURCE", "admin")
LOCALKUBE_MONGO_DB = env("LOCALKUBE_MONGO_DB", "localkube")
LOCALKUBE_MONGO_COLLECTION = env("LOCALKUBE_MONGO_COLLECTION", "events")
LOCALKUBE_MONGO_TIMEOUT_SECONDS = int(env("LOCALKUBE_MONGO_TIMEOUT_SECONDS", "3") or "3")

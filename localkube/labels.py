from typing import Dict

from localkube import settings
from localkube.application import Application

MANAGED_LABEL = "localkube.managed"
NODE_LABEL = "localkube.node"


def node_filter(node: str = "") -> str:
    return f"label={NODE_LABEL}={node or settings.LOCALKUBE_NODE_NAME}"


def labels_for_app(app: Application, node: str = "") -> Dict[str, str]:
    return {
        MANAGED_LABEL: "true",
        NODE_LABEL: node or settings.LOCALKUBE_NODE_NAME,
        "localkube.app-id": str(app.id),
        "localkube.app": app.app,
        "localkube.port": str(app.port_app),
        "localkube.service-port": str(app.port_service),
    }

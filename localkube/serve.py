"""
Production entry point for localkube.

Runs uvicorn with log_config=None so the handlers installed by
setup_logging (stderr + rotating app.log) are not replaced by uvicorn's own.
"""

import uvicorn

from localkube import settings
from localkube.logging_setup import setup_logging


def main() -> None:
    setup_logging("localkube")
    uvicorn.run(
        "localkube.main:app",
        host=str(settings.LOCALKUBE_HOST or "0.0.0.0"),
        port=int(settings.LOCALKUBE_PORT or 8080),
        log_config=None,
        access_log=True,
    )


if __name__ == "__main__":
    main()

"""Run the service with uvicorn: ``python -m webhook_renewal``."""

import uvicorn
from dotenv import load_dotenv

from webhook_renewal.config import get_settings


def main() -> None:
    # Export .env to the process so FERNET_KEYS rotation keys are visible too
    load_dotenv()
    settings = get_settings()
    uvicorn.run(
        "webhook_renewal.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

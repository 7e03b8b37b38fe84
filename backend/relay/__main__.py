"""Run the relay with uvicorn using the configured host and port."""
import uvicorn

from relay.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "relay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()

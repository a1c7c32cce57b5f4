import logging
import sys

import uvicorn

from safe_proxy.config import ConfigurationError, load_config
from safe_proxy.server import create_app
from safe_proxy.vars import LOG_LEVEL

logger = logging.getLogger("uvicorn.error")


def main() -> None:
    try:
        config = load_config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"[!] {e}")
        sys.exit(1)

    app = create_app(config)
    logger.info(f"Proxy site on http://localhost:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=LOG_LEVEL,
        server_header=False,
    )


if __name__ == "__main__":
    main()

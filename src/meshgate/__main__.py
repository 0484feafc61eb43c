# src/meshgate/__main__.py
from __future__ import annotations

import asyncio
import logging
import sys

from meshgate.env import load_dotenv_if_present
from meshgate.errors import BootstrapError
from meshgate.structured_logging import configure_structured_logging, log_event

log = logging.getLogger("meshgate")


def main() -> int:
    # Load .env early so MESHGATE_* vars exist before anything reads them.
    load_dotenv_if_present()
    configure_structured_logging()

    # Import after dotenv load (prevents "config read before env" surprises)
    from meshgate.config import load_gateway_config
    from meshgate.service import run_node

    try:
        cfg = load_gateway_config()
        log_event(log, "node_starting", hostname=cfg.hostname, has_auth_key=cfg.auth_key is not None)
        asyncio.run(run_node(cfg))
    except BootstrapError as e:
        log_event(
            log,
            "node_fatal",
            level=logging.CRITICAL,
            code=e.code,
            reason=e.reason,
            details=e.details,
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

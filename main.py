# main.py
# Punto de entrada: export-mail <comando> (auth | download | export | full | status)
from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import List, Optional

from config.settings import load_settings
from interface_adapters.controllers.cli_controller import CliController, parse_args

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)

    level = logging.DEBUG if args.verbose else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    logger.debug("=== Export Mail === base=%s tenant=%s", settings.GRAPH_BASE, settings.GRAPH_TENANT_ID)
    return CliController(settings=settings).run(args)


if __name__ == "__main__":
    sys.exit(main())

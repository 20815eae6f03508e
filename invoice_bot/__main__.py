"""Module entrypoint for running the invoice bot server."""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv

from .config import ConfigurationError, Settings
from .server import DependencyError, run


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        run(settings)
    except (ConfigurationError, DependencyError) as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

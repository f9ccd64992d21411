"""Entry point for ``python -m swarmget``."""

from __future__ import annotations

from swarmget.cli.main import main

if __name__ == "__main__":
    main()

"""Allow running with ``python -m techstore_server``."""

from .cli import main

main()

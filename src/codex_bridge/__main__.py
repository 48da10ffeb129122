"""Allow ``python -m codex_bridge``."""

from .cli import main

main()

"""Allow ``python -m echoserver``."""

from .cli import main

main()

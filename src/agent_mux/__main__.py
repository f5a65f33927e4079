"""Allow ``python -m agent_mux``."""

from agent_mux.cli import main

main()

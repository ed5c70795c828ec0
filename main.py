"""podcp entry point for running from a source checkout."""

from __future__ import annotations

from podcp.cli import main

if __name__ == "__main__":
    main()

"""Run the bitpiece command-line interface."""

from __future__ import annotations

from bitpiece.cli.main import main

if __name__ == "__main__":
    main()

"""Entry point for ``python -m truthrelay``."""

from truthrelay.main import run

if __name__ == "__main__":
    run()

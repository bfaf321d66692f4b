"""Module entrypoint for `python -m specpilot`."""

from specpilot.cli import run

if __name__ == "__main__":
    raise SystemExit(run())

"""Entry point for `python -m billing_engine.cli` and the `billing-engine` console script."""

from __future__ import annotations

from billing_engine.cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()

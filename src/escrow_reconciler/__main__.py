"""Allow ``python -m escrow_reconciler``."""

from escrow_reconciler.cli import app

if __name__ == "__main__":
    app()

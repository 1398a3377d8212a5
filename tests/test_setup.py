"""Test that the project setup is working correctly."""

import escrow_reconciler


def test_version() -> None:
    """Test that version is defined."""
    assert escrow_reconciler.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from escrow_reconciler import audit
    from escrow_reconciler import chain
    from escrow_reconciler import ingestor
    from escrow_reconciler import jobs
    from escrow_reconciler import storage
    from escrow_reconciler import sync

    # Just verify imports work
    assert audit is not None
    assert chain is not None
    assert ingestor is not None
    assert jobs is not None
    assert storage is not None
    assert sync is not None

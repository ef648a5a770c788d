"""Test that the project setup is working correctly."""

import escrow_settlement


def test_version() -> None:
    """Test that version is defined."""
    assert escrow_settlement.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from escrow_settlement import allocation
    from escrow_settlement import chain
    from escrow_settlement import claims
    from escrow_settlement import commitments
    from escrow_settlement import rotation
    from escrow_settlement import settlement
    from escrow_settlement import signing
    from escrow_settlement import storage
    from escrow_settlement import voting

    # Just verify imports work
    assert allocation is not None
    assert chain is not None
    assert claims is not None
    assert commitments is not None
    assert rotation is not None
    assert settlement is not None
    assert signing is not None
    assert storage is not None
    assert voting is not None

"""Identity reconciliation and hybrid directory/local authentication."""

__version__ = "1.0.0"

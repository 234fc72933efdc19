"""Collect Pipeline - pulls forms and submissions from data collection servers."""

__version__ = "1.0.0"

# Essential exports only
__all__ = ["__version__"]

"""Order lifecycle pipeline: submission, execution workers, cancellation and queries."""

__version__ = "0.1.0"

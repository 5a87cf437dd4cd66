"""Order Coffee: state-managed server that controls system suspension."""

__version__ = "2.0.0"

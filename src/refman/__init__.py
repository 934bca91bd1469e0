"""refman: a CSL-JSON reference manager with an optional background server."""

__version__ = "0.1.0"

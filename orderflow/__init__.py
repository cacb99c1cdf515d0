"""Order and payment consistency pipeline for a server-rendered storefront."""

__version__ = "0.1.0"

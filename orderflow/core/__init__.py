"""Core order/payment pipeline services."""

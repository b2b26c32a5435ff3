"""Deadline-bounded voice gateway with an asynchronous completion worker."""

__version__ = "0.1.0"

"""Reconcile declared JetStream consumers, key-value buckets and object stores."""

__version__ = "0.1.0"
"""
anonsync - continuous anonymization of the customers collection.

Watches the source collection, hashes personal fields and materializes the
result into the anonymized collection, resuming from a persisted checkpoint.
"""

__version__ = "0.1.0"

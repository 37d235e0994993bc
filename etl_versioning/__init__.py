"""
ETL snapshot versioning, diff and rollback service.
"""

__version__ = "1.0.0"

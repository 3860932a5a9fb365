"""
Helper utilities for the waitlist registration reconciliation pipeline.

This package contains shared code for:
- loading and filtering registry registrations
- end-date resolution and registration classification
- episode grouping, collapsing and dataset merging
- S3, DuckDB, pipeline state and logging utilities
"""

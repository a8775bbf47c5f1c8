"""
Customer import pipeline.

Staged bulk import of customer records: upload, column mapping, validation,
commit with an undo log, and rollback.
"""

"""Status package: enums, exceptions and error reporting.

This package defines:
    - Status: a StrEnum of possible application states
    - STATUS_MESSAGE: default user-facing messages per status
    - BaseStatusException: base exception for status-driven error handling
    - Specific exceptions (e.g., RemoteStoreException) tagged with statuses
    - ErrorHandlingService: error history, statistics and burst collapsing
"""

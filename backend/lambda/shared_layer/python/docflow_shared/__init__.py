"""docflow_shared — Shared modules for docflow Lambda functions.

Provides:
    - Environment configuration (table names, lookup modes, cascade limits)
    - DynamoDB client singleton
    - DynamoDB serialization/deserialization and version tokens
    - Versioned record store (DynamoDB + in-memory backends)
    - Version writer (append-only, head-pointer CAS)
    - Active-version reconciliation and sweeps
    - Cognito JWT authentication, HTTP response helpers, observability lines
"""

__version__ = "0.1.0"

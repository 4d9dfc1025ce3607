"""
TagOnLink API package.

Modules:
- config: environment settings and logging setup
- db: PostgreSQL connection pooling + query helpers
- repository: SQL for users and links
- auth_utils: password hashing, JWT codec and bearer auth dependency
- errors: error taxonomy and JSON error handlers
- schemas: Pydantic models for the REST API
- check_db: command-line database diagnostics
"""

"""
Marketplace Upload Broker - scoped upload credentials for a marketplace.

This package contains the complete application:
- core: Framework-agnostic upload policy, token and reconciliation logic
- infrastructure: Object storage and Snowflake integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"

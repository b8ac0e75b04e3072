"""
Core business logic for the upload broker.

This module is framework-agnostic - it doesn't import FastAPI, boto3,
Snowflake or any infrastructure concerns. Storage and persistence are
reached only through the small protocols declared next to the code that
needs them.
"""

"""
Snowflake persistence for stored object references.
"""
